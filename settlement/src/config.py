"""
Settlement engine configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
Every value has a default so a device engine can start without any
environment; the tariff itself is only range-checked by the PriceValidator
at computation time, never at load time.

CHANGELOG:
- 2026-10-14: Add SELF_CONSUMPTION_RATIO for the savings decomposition
- 2026-10-12: Initial creation

TODO:
- None
"""

import math

from pydantic import field_validator
from pydantic_settings import BaseSettings


class EngineSettings(BaseSettings):
    """Settlement engine configuration.

    Attributes:
        price_per_kwh: Tariff in currency/kWh applied to settled events.
        statistics_retention_days: Ledger retention window in days.
        statistics_max_entries: Hard cap on ledger entries per device
            (newest kept), applied after time-based pruning.
        flush_interval_minutes: Minimum minutes between grid counter flushes.
        outlier_history_size: Number of recent ledger entries used as the
            outlier detection baseline.
        outlier_z_threshold: z-score above which an amount is an outlier.
        self_consumption_ratio: Share of discharge value counted as
            savings (self-consumption avoidance) rather than export revenue.
        statistics_transparency: Log calculation inputs for each settled entry.
        store_path: SQLite file used by the HTTP surface for device stores.
        webhook_url: HTTPS endpoint receiving emitted notifications.
            Empty disables forwarding.
        log_level: Root logger level name.
    """

    price_per_kwh: float = 0.30
    statistics_retention_days: int = 30
    statistics_max_entries: int = 10000
    flush_interval_minutes: int = 60
    outlier_history_size: int = 10
    outlier_z_threshold: float = 2.5
    self_consumption_ratio: float = 1.0
    statistics_transparency: bool = False
    store_path: str = "/data/settlement.db"
    webhook_url: str = ""
    log_level: str = "INFO"

    @field_validator("price_per_kwh")
    @classmethod
    def price_must_be_finite(cls, v: float) -> float:
        """Reject NaN/inf tariffs; range checks belong to the PriceValidator."""
        if not math.isfinite(v):
            raise ValueError("PRICE_PER_KWH must be a finite number")
        return v

    @field_validator("statistics_retention_days")
    @classmethod
    def retention_must_be_valid(cls, v: int) -> int:
        """Validate retention is between 0 and 3650 days."""
        if v < 0 or v > 3650:
            raise ValueError("STATISTICS_RETENTION_DAYS must be >= 0 and <= 3650")
        return v

    @field_validator("statistics_max_entries", "flush_interval_minutes")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        """Validate entry cap and flush interval are at least 1."""
        if v < 1:
            raise ValueError("value must be >= 1")
        return v

    @field_validator("outlier_history_size")
    @classmethod
    def outlier_history_must_allow_spread(cls, v: int) -> int:
        """At least 3 history values are needed for a meaningful spread."""
        if v < 3:
            raise ValueError("OUTLIER_HISTORY_SIZE must be >= 3")
        return v

    @field_validator("outlier_z_threshold")
    @classmethod
    def z_threshold_must_be_positive(cls, v: float) -> float:
        if not v > 0:
            raise ValueError("OUTLIER_Z_THRESHOLD must be > 0")
        return v

    @field_validator("self_consumption_ratio")
    @classmethod
    def ratio_must_be_fraction(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("SELF_CONSUMPTION_RATIO must be between 0 and 1")
        return v

    @field_validator("webhook_url")
    @classmethod
    def webhook_url_must_be_https(cls, v: str) -> str:
        """Notifications may only be forwarded over HTTPS."""
        if v and not v.lower().startswith("https://"):
            raise ValueError(
                f"WEBHOOK_URL must use HTTPS (got: '{v[:20]}...')."
            )
        return v

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
