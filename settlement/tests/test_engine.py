"""
Integration tests for SettlementEngine over an in-memory store.

Verifies:
- Grid counters 1000 -> 1600 (firmware 154) over one hour settle into one
  60 kWh charging entry with meter readings, and emit two events.
- Import and export legs of one flush commit together.
- An invalid tariff leaves the accumulator state unstaged so the next
  valid flush covers the whole window.
- A failing event sink does not roll back the append.
- Invalid and future telemetry is rejected without raising.
- Power samples settle through the integration tracker.
- metrics() falls back to the display price for an invalid tariff.
- reset_statistics() clears the ledger and the accumulator state.
- Non-finite samples are rejected without disturbing the open window.
- A failed ledger write leaves the power tracker where it was.
- Reports and metrics agree on savings for a partial self-consumption ratio.
- Concurrent grid and power deliveries lose no entries.

CHANGELOG:
- 2026-10-16: Cover non-finite samples, failed commits, savings ratio and
  concurrent delivery
- 2026-10-15: Cover payload entry points
- 2026-10-14: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from typing import Any
from unittest.mock import AsyncMock

import pytest
from conftest import NOON_TS, FakeClock, make_entry
from pydantic import ValidationError
from settlement.src.config import EngineSettings
from settlement.src.engine import (
    REASON_INVALID_PRICE,
    REASON_INVALID_TELEMETRY,
    SettlementEngine,
)
from settlement.src.events import CalculationCompleted, QueueEventSink, StatisticsEntryLogged
from settlement.src.models import GridCounterSample, PowerSample
from settlement.src.store import GRID_COUNTER_ACCUMULATOR_KEY, MemoryStore

_HOUR = 3600.0


class _FlakyStore(MemoryStore):
    """MemoryStore whose next set_many fails when armed."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_next = False

    async def set_many(self, values: dict[str, Any]) -> None:
        if self.fail_next:
            self.fail_next = False
            raise OSError("disk full")
        await super().set_many(values)


class _YieldingStore(MemoryStore):
    """MemoryStore that yields to the event loop on every access."""

    async def get(self, key: str) -> Any | None:
        await asyncio.sleep(0)
        return await super().get(key)

    async def set_many(self, values: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        await super().set_many(values)


def _counters(input_raw: float, output_raw: float) -> dict[str, float]:
    return {"total_grid_input_energy": input_raw, "total_grid_output_energy": output_raw}


# ---------------------------------------------------------------------------
# Grid counters
# ---------------------------------------------------------------------------


class TestGridCounterSettlement:
    @pytest.mark.asyncio
    async def test_hourly_import_flush(
        self, engine: SettlementEngine, sink: QueueEventSink
    ) -> None:
        first = await engine.process_grid_payload(
            _counters(1000, 500), firmware=154, ts=NOON_TS - _HOUR
        )
        assert first.accepted
        assert first.reason == "initialized"

        outcome = await engine.process_grid_payload(_counters(1600, 500), firmware=154, ts=NOON_TS)

        assert outcome.accepted
        assert outcome.reason == "flushed"
        [entry] = await engine.ledger.read()
        assert entry.type == "charging"
        assert entry.energy_amount == pytest.approx(60.0)
        assert entry.duration == pytest.approx(60.0)
        assert entry.price_at_time == 0.30
        assert entry.timestamp == NOON_TS
        assert entry.start_energy_meter == 1000
        assert entry.end_energy_meter == 1600
        assert entry.calculation_audit.calculation_method == "grid_counters_import"

        events = sink.drain()
        assert [type(e) for e in events] == [StatisticsEntryLogged, CalculationCompleted]
        assert events[0].device_id == "venus-1"
        assert events[0].value == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_legacy_firmware_divisor(self, engine: SettlementEngine) -> None:
        await engine.process_grid_payload(_counters(1000, 500), firmware=120, ts=NOON_TS - _HOUR)
        await engine.process_grid_payload(_counters(1600, 500), firmware=120, ts=NOON_TS)

        [entry] = await engine.ledger.read()
        assert entry.energy_amount == pytest.approx(6.0)

    @pytest.mark.asyncio
    async def test_import_and_export_legs(self, engine: SettlementEngine) -> None:
        await engine.process_grid_payload(_counters(1000, 500), firmware=154, ts=NOON_TS - _HOUR)

        outcome = await engine.process_grid_payload(_counters(1020, 530), firmware=154, ts=NOON_TS)

        assert [e.type for e in outcome.entries] == ["charging", "discharging"]
        charge, discharge = await engine.ledger.read()
        assert charge.energy_amount == pytest.approx(2.0)
        assert discharge.energy_amount == pytest.approx(-3.0)
        assert discharge.calculation_audit.calculation_method == "grid_counters_export"
        assert discharge.start_energy_meter == 500
        assert discharge.end_energy_meter == 530

    @pytest.mark.asyncio
    async def test_state_persisted_between_samples(
        self, engine: SettlementEngine, store: MemoryStore
    ) -> None:
        await engine.process_grid_payload(_counters(1000, 500), firmware=154, ts=NOON_TS - _HOUR)
        await engine.process_grid_payload(_counters(1010, 500), firmware=154, ts=NOON_TS - 1800)

        state = await store.get(GRID_COUNTER_ACCUMULATOR_KEY)
        assert state["acc_input_delta_raw"] == 10
        assert await engine.ledger.read() == []

    @pytest.mark.asyncio
    async def test_out_of_order_not_accepted(self, engine: SettlementEngine) -> None:
        await engine.process_grid_payload(_counters(1000, 500), ts=NOON_TS - 60)
        outcome = await engine.process_grid_payload(_counters(1001, 500), ts=NOON_TS - 120)
        assert not outcome.accepted
        assert outcome.reason == "out_of_order"

    @pytest.mark.asyncio
    async def test_counter_reset_recorded_on_next_flush(self, engine: SettlementEngine) -> None:
        await engine.process_grid_payload(_counters(5000, 1200), firmware=154, ts=NOON_TS - _HOUR)
        reset = await engine.process_grid_payload(_counters(5, 2), firmware=154, ts=NOON_TS - 1800)
        assert reset.reason == "counter_reset"
        assert reset.warnings

        await engine.process_grid_payload(_counters(15, 2), firmware=154, ts=NOON_TS)

        [entry] = await engine.ledger.read()
        assert entry.energy_amount == pytest.approx(1.0)
        assert len(entry.calculation_audit.recovery_actions) == 1


class TestInvalidPrice:
    @pytest.mark.asyncio
    async def test_flush_deferred_until_price_valid(
        self, store: MemoryStore, clock: FakeClock, sink: QueueEventSink
    ) -> None:
        price = {"value": -1.0}
        engine = SettlementEngine(
            "venus-1", store, EngineSettings(), sink=sink,
            price_provider=lambda: price["value"], clock=clock,
        )
        await engine.process_grid_payload(_counters(1000, 500), firmware=154, ts=NOON_TS - _HOUR)

        outcome = await engine.process_grid_payload(_counters(1600, 500), firmware=154, ts=NOON_TS)

        assert not outcome.accepted
        assert outcome.reason == REASON_INVALID_PRICE
        assert outcome.errors
        assert await engine.ledger.read() == []
        state = await store.get(GRID_COUNTER_ACCUMULATOR_KEY)
        assert state["last_input_raw"] == 1000

        price["value"] = 0.30
        clock.advance(60)
        await engine.process_grid_payload(_counters(1610, 500), firmware=154, ts=NOON_TS + 60)

        [entry] = await engine.ledger.read()
        assert entry.energy_amount == pytest.approx(61.0)
        assert entry.duration == pytest.approx(61.0)
        assert sink.queue.qsize() == 2


class TestInvalidTelemetry:
    @pytest.mark.asyncio
    async def test_missing_counters(self, engine: SettlementEngine) -> None:
        outcome = await engine.process_grid_payload({"total_grid_input_energy": 5})
        assert not outcome.accepted
        assert outcome.reason == REASON_INVALID_TELEMETRY

    @pytest.mark.asyncio
    async def test_future_timestamp_rejected(self, engine: SettlementEngine) -> None:
        sample = GridCounterSample(
            timestamp_sec=NOON_TS + _HOUR,
            input_raw=1000,
            output_raw=500,
            divisor_raw_per_kwh=10,
        )
        outcome = await engine.process_grid_counters(sample)
        assert outcome.reason == REASON_INVALID_TELEMETRY

    @pytest.mark.asyncio
    async def test_invalid_power_payload(self, engine: SettlementEngine) -> None:
        outcome = await engine.process_power_payload({"charge": "x"})
        assert outcome.reason == REASON_INVALID_TELEMETRY


class TestNonFiniteSamples:
    @pytest.mark.parametrize("field", ["timestamp_sec", "input_raw", "output_raw"])
    def test_grid_sample_model_rejects_nan(self, field: str) -> None:
        values = {
            "timestamp_sec": NOON_TS,
            "input_raw": 1000.0,
            "output_raw": 500.0,
            "divisor_raw_per_kwh": 10.0,
        }
        values[field] = math.nan
        with pytest.raises(ValidationError):
            GridCounterSample(**values)

    def test_power_sample_model_rejects_infinity(self) -> None:
        with pytest.raises(ValidationError):
            PowerSample(timestamp_sec=NOON_TS, charge_power_w=math.inf, discharge_power_w=0.0)

    @pytest.mark.asyncio
    async def test_nan_counter_sample_does_not_swallow_window(
        self, engine: SettlementEngine
    ) -> None:
        await engine.process_grid_payload(_counters(1000, 500), firmware=154, ts=NOON_TS - _HOUR)
        bad = GridCounterSample.model_construct(
            timestamp_sec=NOON_TS - _HOUR + 60,
            input_raw=math.nan,
            output_raw=500.0,
            divisor_raw_per_kwh=10.0,
        )

        outcome = await engine.process_grid_counters(bad)

        assert not outcome.accepted
        assert outcome.reason == REASON_INVALID_TELEMETRY
        assert "input_raw" in outcome.errors[0]

        flushed = await engine.process_grid_payload(_counters(1600, 500), firmware=154, ts=NOON_TS)

        assert flushed.reason == "flushed"
        [entry] = await engine.ledger.read()
        assert entry.energy_amount == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_nan_power_sample_keeps_event_open(self, engine: SettlementEngine) -> None:
        await engine.process_power_payload(
            {"charge": 1000, "discharge": 0, "report_time": NOON_TS - _HOUR}
        )
        bad = PowerSample.model_construct(
            timestamp_sec=NOON_TS - 1800, charge_power_w=math.nan, discharge_power_w=0.0
        )

        outcome = await engine.process_power(bad)

        assert outcome.reason == REASON_INVALID_TELEMETRY
        assert engine.tracker.state.charging_state == "charging"

        settled = await engine.process_power_payload(
            {"charge": 0, "discharge": 0, "report_time": NOON_TS}
        )

        assert settled.reason == "settled"
        assert settled.entries[0].energy_amount == pytest.approx(1.0)


class TestEventSinkFailure:
    @pytest.mark.asyncio
    async def test_failing_sink_does_not_roll_back(
        self, store: MemoryStore, clock: FakeClock, caplog: pytest.LogCaptureFixture
    ) -> None:
        broken = AsyncMock()
        broken.emit = AsyncMock(side_effect=RuntimeError("sink down"))
        engine = SettlementEngine("venus-1", store, EngineSettings(), sink=broken, clock=clock)
        await engine.process_grid_payload(_counters(1000, 500), firmware=154, ts=NOON_TS - _HOUR)

        with caplog.at_level(logging.ERROR):
            outcome = await engine.process_grid_payload(
                _counters(1600, 500), firmware=154, ts=NOON_TS
            )

        assert outcome.accepted
        assert len(await engine.ledger.read()) == 1
        assert "Event notification failed" in caplog.text


# ---------------------------------------------------------------------------
# Power integration
# ---------------------------------------------------------------------------


class TestPowerSettlement:
    @pytest.mark.asyncio
    async def test_charge_event_settles(
        self, engine: SettlementEngine, sink: QueueEventSink
    ) -> None:
        started = await engine.process_power_payload(
            {"charge": 1000, "discharge": 0, "report_time": NOON_TS - _HOUR}
        )
        assert started.reason == "started"

        outcome = await engine.process_power_payload(
            {"charge": 0, "discharge": 0, "report_time": NOON_TS}
        )

        assert outcome.accepted
        assert outcome.reason == "settled"
        [entry] = await engine.ledger.read()
        assert entry.energy_amount == pytest.approx(1.0)
        assert entry.calculation_audit.calculation_method == "power_integration"
        assert len(sink.drain()) == 2

    @pytest.mark.asyncio
    async def test_transparency_logs_inputs(
        self, store: MemoryStore, clock: FakeClock, caplog: pytest.LogCaptureFixture
    ) -> None:
        engine = SettlementEngine(
            "venus-1", store, EngineSettings(statistics_transparency=True), clock=clock
        )
        await engine.process_power_payload({"charge": 0, "discharge": 500, "report_time": NOON_TS - 600})

        with caplog.at_level(logging.INFO):
            await engine.process_power_payload({"charge": 0, "discharge": 0, "report_time": NOON_TS})

        assert "Calculation inputs for power_integration" in caplog.text


class TestFailedCommit:
    @pytest.mark.asyncio
    async def test_power_event_survives_failed_write(self, clock: FakeClock) -> None:
        store = _FlakyStore()
        engine = SettlementEngine("venus-1", store, EngineSettings(), clock=clock)
        await engine.process_power_payload(
            {"charge": 1000, "discharge": 0, "report_time": NOON_TS - _HOUR}
        )
        closing = {"charge": 0, "discharge": 0, "report_time": NOON_TS}

        store.fail_next = True
        with pytest.raises(OSError):
            await engine.process_power_payload(closing)

        state = engine.tracker.state
        assert state.charging_state == "charging"
        assert state.event_start_sec == NOON_TS - _HOUR
        assert await engine.ledger.read() == []
        assert not engine.ledger.locked

        redelivered = await engine.process_power_payload(closing)

        assert redelivered.reason == "settled"
        [entry] = await engine.ledger.read()
        assert entry.energy_amount == pytest.approx(1.0)
        assert engine.tracker.state.charging_state == "idle"

    @pytest.mark.asyncio
    async def test_failed_reset_keeps_tracker(self, clock: FakeClock) -> None:
        store = _FlakyStore()
        engine = SettlementEngine("venus-1", store, EngineSettings(), clock=clock)
        await engine.process_power_payload(
            {"charge": 800, "discharge": 0, "report_time": NOON_TS - 60}
        )

        store.fail_next = True
        with pytest.raises(OSError):
            await engine.reset_statistics()

        assert engine.tracker.state.charging_state == "charging"


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrentDelivery:
    @pytest.mark.asyncio
    async def test_simultaneous_grid_and_power_settle(
        self, clock: FakeClock, sink: QueueEventSink
    ) -> None:
        engine = SettlementEngine(
            "venus-1", _YieldingStore(), EngineSettings(), sink=sink, clock=clock
        )
        await engine.process_grid_payload(_counters(1000, 500), firmware=154, ts=NOON_TS - _HOUR)
        await engine.process_power_payload(
            {"charge": 1000, "discharge": 0, "report_time": NOON_TS - _HOUR}
        )

        grid, power = await asyncio.gather(
            engine.process_grid_payload(_counters(1020, 530), firmware=154, ts=NOON_TS),
            engine.process_power_payload({"charge": 0, "discharge": 0, "report_time": NOON_TS}),
        )

        assert len(grid.entries) == 2
        assert len(power.entries) == 1
        entries = await engine.ledger.read()
        assert sorted(e.calculation_audit.calculation_method for e in entries) == [
            "grid_counters_export",
            "grid_counters_import",
            "power_integration",
        ]
        assert sink.queue.qsize() == 6
        assert not engine.ledger.locked

    @pytest.mark.asyncio
    async def test_simultaneous_power_samples_keep_order(self, clock: FakeClock) -> None:
        engine = SettlementEngine("venus-1", _YieldingStore(), EngineSettings(), clock=clock)

        results = await asyncio.gather(
            engine.process_power_payload(
                {"charge": 1000, "discharge": 0, "report_time": NOON_TS - _HOUR}
            ),
            engine.process_power_payload(
                {"charge": 1000, "discharge": 0, "report_time": NOON_TS - 1800}
            ),
            engine.process_power_payload({"charge": 0, "discharge": 0, "report_time": NOON_TS}),
        )

        assert [r.reason for r in results] == ["started", "accumulating", "settled"]
        [entry] = await engine.ledger.read()
        assert entry.energy_amount == pytest.approx(1.0)


# ---------------------------------------------------------------------------
# Read-back
# ---------------------------------------------------------------------------


class TestMetrics:
    @pytest.mark.asyncio
    async def test_daily_scenario(self, engine: SettlementEngine) -> None:
        await engine.ledger.append(make_entry(timestamp=NOON_TS - 600, energy_amount=2.0))
        await engine.ledger.append(make_entry(timestamp=NOON_TS - 300, energy_amount=-1.5))

        metrics = await engine.metrics()

        assert metrics.daily_profit == pytest.approx(-0.15)
        assert metrics.hourly_profit == pytest.approx(-0.15 / 12)
        assert metrics.daily_charge_energy == 2.0
        assert metrics.daily_discharge_energy == 1.5
        assert metrics.breakdown.cost == pytest.approx(0.60)
        assert metrics.breakdown.discharge_revenue == pytest.approx(0.45)
        assert metrics.current_price == 0.30
        assert metrics.price_is_fallback is False
        assert metrics.entry_count == 2

    @pytest.mark.asyncio
    async def test_invalid_price_uses_display_fallback(
        self, store: MemoryStore, clock: FakeClock
    ) -> None:
        engine = SettlementEngine(
            "venus-1", store, EngineSettings(), price_provider=lambda: float("nan"), clock=clock
        )

        metrics = await engine.metrics()

        assert metrics.current_price == 0.30
        assert metrics.price_is_fallback is True
        assert metrics.daily_profit == 0.0

    @pytest.mark.asyncio
    async def test_export_and_verify(self, engine: SettlementEngine) -> None:
        await engine.ledger.append(make_entry(timestamp=NOON_TS - 600))

        rows = json.loads(await engine.export_statistics("json", "daily"))
        report = await engine.verify_calculation("last_day")

        assert rows[0]["date"] == "2026-03-10"
        assert "Total entries: 1" in report

    @pytest.mark.asyncio
    async def test_savings_agree_across_outputs(self, store: MemoryStore, clock: FakeClock) -> None:
        engine = SettlementEngine(
            "venus-1", store, EngineSettings(self_consumption_ratio=0.5), clock=clock
        )
        await engine.ledger.append(make_entry(timestamp=NOON_TS - 600, energy_amount=2.0))
        await engine.ledger.append(make_entry(timestamp=NOON_TS - 300, energy_amount=-1.5))

        metrics = await engine.metrics()
        [day] = json.loads(await engine.export_statistics("json", "daily"))
        report = await engine.verify_calculation("last_day")

        savings = metrics.breakdown.savings
        assert savings == pytest.approx(0.225, abs=0.006)
        assert savings < metrics.breakdown.discharge_revenue
        assert day["total_savings"] == savings
        assert f"  Total savings: {savings:.2f}" in report.split("\n")

    @pytest.mark.asyncio
    async def test_unknown_format_raises(self, engine: SettlementEngine) -> None:
        with pytest.raises(ValueError):
            await engine.export_statistics("xml", "daily")


class TestReset:
    @pytest.mark.asyncio
    async def test_reset_clears_everything(
        self, engine: SettlementEngine, store: MemoryStore
    ) -> None:
        await engine.process_grid_payload(_counters(1000, 500), firmware=154, ts=NOON_TS - _HOUR)
        await engine.process_grid_payload(_counters(1600, 500), firmware=154, ts=NOON_TS)
        await engine.process_power_payload({"charge": 800, "discharge": 0, "report_time": NOON_TS})

        await engine.reset_statistics()

        assert await engine.ledger.read() == []
        assert await store.get(GRID_COUNTER_ACCUMULATOR_KEY) is None
        assert engine.tracker.state.charging_state == "idle"

        again = await engine.process_grid_payload(_counters(1600, 500), firmware=154, ts=NOON_TS)
        assert again.reason == "initialized"
