"""
Shared test fixtures for the settlement engine tests.

All EngineSettings environment variables are cleaned before each test and
the working directory moves to tmp_path so no .env file is picked up.
Also provides a controllable clock, an in-memory store and an engine wired
to a queue sink.

CHANGELOG:
- 2026-10-13: Add engine and clock fixtures
- 2026-10-12: Initial creation

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from settlement.src.config import EngineSettings
from settlement.src.engine import SettlementEngine
from settlement.src.events import QueueEventSink
from settlement.src.models import CalculationAudit, StatisticsEntry
from settlement.src.store import MemoryStore

# All EngineSettings environment variable names, used for cleanup.
_ALL_SETTLEMENT_ENV_VARS = (
    "PRICE_PER_KWH",
    "STATISTICS_RETENTION_DAYS",
    "STATISTICS_MAX_ENTRIES",
    "FLUSH_INTERVAL_MINUTES",
    "OUTLIER_HISTORY_SIZE",
    "OUTLIER_Z_THRESHOLD",
    "SELF_CONSUMPTION_RATIO",
    "STATISTICS_TRANSPARENCY",
    "STORE_PATH",
    "WEBHOOK_URL",
    "LOG_LEVEL",
)

# 2026-03-10 12:00:00 UTC
NOON_TS = datetime(2026, 3, 10, 12, 0, 0, tzinfo=UTC).timestamp()


@pytest.fixture(autouse=True)
def _clean_settlement_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all settlement env vars and isolate from .env files."""
    for var in _ALL_SETTLEMENT_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, now: float = NOON_TS) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def sink() -> QueueEventSink:
    return QueueEventSink(maxsize=100)


@pytest.fixture()
def engine(store: MemoryStore, sink: QueueEventSink, clock: FakeClock) -> SettlementEngine:
    """Engine for device ``venus-1`` at 0.30/kWh with default settings."""
    return SettlementEngine("venus-1", store, EngineSettings(), sink=sink, clock=clock)


def make_entry(
    timestamp: float = NOON_TS,
    energy_amount: float = 1.0,
    price: float = 0.30,
    duration: float = 60.0,
    method: str = "grid_counters_import",
    **audit: object,
) -> StatisticsEntry:
    """Build a StatisticsEntry; the type follows the sign of *energy_amount*."""
    return StatisticsEntry(
        timestamp=timestamp,
        type="charging" if energy_amount > 0 else "discharging",
        energy_amount=energy_amount,
        duration=duration,
        price_at_time=price,
        calculation_audit=CalculationAudit(calculation_method=method, **audit),
    )
