"""
Pydantic models for telemetry samples, ledger entries and derived aggregates.

The ledger entry (StatisticsEntry) and the grid counter accumulator state
are persisted by the collaborator's key-value store as JSON-compatible
dicts produced by ``model_dump(mode="json")``; everything else here is
derived on demand and never stored.

Sign convention: ``energy_amount`` is positive for charging (energy absorbed)
and negative for discharging (energy released). Profit math depends on it.

CHANGELOG:
- 2026-10-16: Reject non-finite telemetry samples at construction
- 2026-10-14: Add PowerTrackerState so the tracker can be snapshotted
- 2026-10-13: Add DetailedBreakdown savings/export decomposition
- 2026-10-12: Initial creation

TODO:
- None
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

EntryType = Literal["charging", "discharging"]
ChargingState = Literal["idle", "charging", "discharging"]


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class CalculationAudit(BaseModel):
    """Provenance recorded alongside every settled entry.

    Attributes:
        calculation_method: Tag naming the path that produced the entry,
            e.g. ``grid_counters_import`` or ``power_integration``.
        precision_loss: Relative error introduced by rounding (>= 0).
        is_outlier: Whether the amount deviated sharply from recent history.
        validation_warnings: Non-fatal warnings collected while settling.
        recovery_actions: Corrective actions taken on the way (counter
            resyncs, discarded samples).
    """

    calculation_method: str
    precision_loss: float = Field(default=0.0, ge=0.0)
    is_outlier: bool = False
    validation_warnings: list[str] = Field(default_factory=list)
    recovery_actions: list[str] = Field(default_factory=list)


class StatisticsEntry(BaseModel):
    """One settled charge or discharge event.

    Attributes:
        timestamp: Settlement time in seconds since epoch.
        type: ``charging`` or ``discharging``.
        energy_amount: Signed kWh, positive for charging, negative for
            discharging.
        duration: Minutes covered by the event.
        price_at_time: Validated tariff (currency/kWh) in force at settlement.
        start_energy_meter: Raw counter reading at the start (grid counters only).
        end_energy_meter: Raw counter reading at the end (grid counters only).
        calculation_audit: Provenance for later verification.
    """

    timestamp: float
    type: EntryType
    energy_amount: float
    duration: float = Field(ge=0.0)
    price_at_time: float
    start_energy_meter: float | None = None
    end_energy_meter: float | None = None
    calculation_audit: CalculationAudit


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------


class GridCounterSample(BaseModel):
    """Cumulative grid import/export counters at one instant (raw units)."""

    model_config = ConfigDict(allow_inf_nan=False)

    timestamp_sec: float
    input_raw: float
    output_raw: float
    divisor_raw_per_kwh: float = Field(gt=0.0)


class PowerSample(BaseModel):
    """Instantaneous charge and discharge power in watts at one instant."""

    model_config = ConfigDict(allow_inf_nan=False)

    timestamp_sec: float
    charge_power_w: float
    discharge_power_w: float


# ---------------------------------------------------------------------------
# Accumulator / tracker state
# ---------------------------------------------------------------------------


class GridCounterAccumulatorState(BaseModel):
    """Persisted state of the grid counter accumulator for one device.

    ``acc_start_*`` describe the baseline of the current accumulation
    window, i.e. the sample at the last flush (or initialisation).
    ``pending_recovery_actions`` collects counter resyncs seen since that
    flush so they can be attached to the entries the next flush settles.
    """

    divisor_raw_per_kwh: float
    last_timestamp_sec: float
    last_input_raw: float
    last_output_raw: float
    acc_start_timestamp_sec: float
    acc_start_input_raw: float
    acc_start_output_raw: float
    acc_input_delta_raw: float = 0.0
    acc_output_delta_raw: float = 0.0
    pending_recovery_actions: list[str] = Field(default_factory=list)


class GridCounterFlush(BaseModel):
    """Energy moved through the grid counters between two flushes (raw units).

    ``end_*_raw`` always equals ``start_*_raw + delta_*_raw``; after a
    counter reset it is therefore a reconstructed reading, not the value
    the device reported.
    """

    start_timestamp_sec: float
    end_timestamp_sec: float
    duration_minutes: float
    start_input_raw: float
    end_input_raw: float
    delta_input_raw: float
    start_output_raw: float
    end_output_raw: float
    delta_output_raw: float
    divisor_raw_per_kwh: float
    recovery_actions: list[str] = Field(default_factory=list)


class PowerTrackerState(BaseModel):
    """Charging-state machine of the power integration tracker."""

    charging_state: ChargingState = "idle"
    event_start_sec: float | None = None
    last_timestamp_sec: float | None = None
    last_power_w: float | None = None
    cumulative_energy_kwh: float = 0.0
    is_outlier: bool = False
    warnings: list[str] = Field(default_factory=list)
    recovery_actions: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Validation / aggregates
# ---------------------------------------------------------------------------


class ValidationResult(BaseModel):
    """Result of validating a tariff, energy amount or timestamp."""

    is_valid: bool
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)


class DailyAggregate(BaseModel):
    """Totals for one UTC calendar day present in the ledger."""

    date: str
    total_charge_energy: float
    total_discharge_energy: float
    total_profit: float
    total_savings: float
    event_count: int


class PeriodAggregate(BaseModel):
    """Totals for one month (``YYYY-MM``) or year (``YYYY``)."""

    period: str
    charge_energy: float
    discharge_energy: float
    total_profit: float


class DetailedBreakdown(BaseModel):
    """Financial breakdown over the whole retained window.

    ``net_profit = discharge_revenue - cost``;
    ``savings + export_revenue == discharge_revenue``.
    """

    charge_energy: float = 0.0
    discharge_energy: float = 0.0
    cost: float = 0.0
    discharge_revenue: float = 0.0
    savings: float = 0.0
    export_revenue: float = 0.0
    net_profit: float = 0.0


class ProfitMetrics(BaseModel):
    """Values the collaborator displays for a device."""

    daily_profit: float
    hourly_profit: float
    daily_charge_energy: float
    daily_discharge_energy: float
    breakdown: DetailedBreakdown
    current_price: float
    price_is_fallback: bool
    entry_count: int
    calculation_timestamp: float


class StatisticsSummary(BaseModel):
    """Totals over a set of entries, used by the verification report."""

    total_events: int = 0
    total_charge_energy: float = 0.0
    total_discharge_energy: float = 0.0
    total_profit: float = 0.0
    total_savings: float = 0.0
    average_price: float = 0.0
