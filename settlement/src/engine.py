"""
Per-device settlement engine tying telemetry, ledger, reports and events.

One SettlementEngine owns everything mutable for one device: the ledger
lock, the power tracker state machine and the event sink. Nothing is shared
across devices and nothing is captured from module globals.

Entry points:
- process_grid_counters(sample) / process_grid_payload(raw, firmware):
  accumulator update, up to two ledger appends and the accumulator state
  write, committed as one ledger transaction.
- process_power(sample) / process_power_payload(raw): power integration;
  settled events are appended inside a ledger transaction.
- metrics(now): values for display (daily and hourly profit, breakdown,
  display price).
- export_statistics(...) / verify_calculation(...): reports over a ledger
  snapshot.
- reset_statistics(): clears the ledger and accumulator state atomically.

Invalid input never raises out of the processing entry points: the outcome
carries ``accepted=False`` and a reason. Events are emitted after the
commit; a failing sink is logged and never rolls back an append.

CHANGELOG:
- 2026-10-16: Reject non-finite samples; adopt tracker state only on commit
- 2026-10-15: Add payload entry points with firmware divisor selection
- 2026-10-14: Commit flushes, state and pruning in one transaction
- 2026-10-13: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from settlement.src import audit
from settlement.src.aggregation import (
    daily_aggregate_for,
    detailed_breakdown,
    hourly_profit,
    utc_date,
)
from settlement.src.config import EngineSettings
from settlement.src.events import EventSink, NullEventSink, build_events
from settlement.src.financial import (
    ENERGY_AMOUNT_DECIMALS,
    bankers_rounding,
    detect_outlier,
    detect_precision_loss,
    validate_energy_amount,
    validate_timestamp,
)
from settlement.src.grid_counters import (
    REASON_NO_FLUSH,
    REASON_OUT_OF_ORDER,
    update_accumulator,
)
from settlement.src.ledger import LedgerTransaction, StatisticsLedger, recent_magnitudes
from settlement.src.models import (
    CalculationAudit,
    GridCounterAccumulatorState,
    GridCounterFlush,
    GridCounterSample,
    PowerSample,
    ProfitMetrics,
    StatisticsEntry,
)
from settlement.src.power_tracker import PowerIntegrationTracker
from settlement.src.pricing import PriceValidator
from settlement.src.store import GRID_COUNTER_ACCUMULATOR_KEY, DeviceStore
from settlement.src.telemetry import normalize_grid_counters, normalize_power

logger = logging.getLogger(__name__)

REASON_INVALID_PRICE = "invalid_price"
REASON_INVALID_TELEMETRY = "invalid_telemetry"


class SettlementOutcome(BaseModel):
    """Result of processing one telemetry sample.

    Attributes:
        accepted: Whether the sample advanced the device state.
        reason: Accumulator/tracker reason, ``invalid_price`` or
            ``invalid_telemetry``.
        entries: Entries appended to the ledger by this sample.
        warnings: Non-fatal warnings collected while processing.
        errors: Failures that aborted part of the computation.
    """

    accepted: bool
    reason: str
    entries: list[StatisticsEntry] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


def _non_finite_fields(sample: BaseModel) -> list[str]:
    """Names of numeric fields of *sample* holding NaN or infinity."""
    return [
        name
        for name, value in sample.model_dump().items()
        if isinstance(value, (int, float)) and not math.isfinite(value)
    ]


def _rejected_sample(kind: str, sample: BaseModel) -> SettlementOutcome | None:
    bad = _non_finite_fields(sample)
    if bad:
        logger.warning("Rejecting %s sample: non-finite %s", kind, ", ".join(bad))
        return SettlementOutcome(
            accepted=False,
            reason=REASON_INVALID_TELEMETRY,
            errors=[f"Non-finite value in {', '.join(bad)}"],
        )
    return None


class SettlementEngine:
    """Energy accounting and settlement for one device.

    Args:
        device_id: Identifier attached to emitted events.
        store: The device's key-value store.
        settings: Engine configuration (defaults from the environment).
        sink: Receiver of emitted notifications.
        price_provider: Returns the tariff in force; read at computation
            time. Defaults to ``settings.price_per_kwh``.
        clock: Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        device_id: str,
        store: DeviceStore,
        settings: EngineSettings | None = None,
        sink: EventSink | None = None,
        price_provider: Callable[[], object] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.device_id = device_id
        self.settings = settings or EngineSettings()
        self._sink = sink or NullEventSink()
        self._price_provider = price_provider or (lambda: self.settings.price_per_kwh)
        self._clock = clock
        self.price_validator = PriceValidator()
        self.ledger = StatisticsLedger(
            store,
            retention_days=self.settings.statistics_retention_days,
            max_entries=self.settings.statistics_max_entries,
            clock=clock,
        )
        self.tracker = self._new_tracker()

    def _new_tracker(self) -> PowerIntegrationTracker:
        return PowerIntegrationTracker(
            price_validator=self.price_validator,
            outlier_threshold=self.settings.outlier_z_threshold,
        )

    # ------------------------------------------------------------------
    # Grid counters
    # ------------------------------------------------------------------

    async def process_grid_payload(
        self,
        raw: dict[str, Any],
        firmware: int | float | None = None,
        ts: float | None = None,
    ) -> SettlementOutcome:
        """Normalize a local device payload and process it.

        The divisor follows the firmware revision; the sample time defaults
        to now.
        """
        sample = normalize_grid_counters(
            raw,
            ts=self._clock() if ts is None else ts,
            firmware=firmware,
        )
        if sample is None:
            return SettlementOutcome(
                accepted=False,
                reason=REASON_INVALID_TELEMETRY,
                errors=["Grid counters missing or invalid in payload"],
            )
        return await self.process_grid_counters(sample)

    async def process_grid_counters(self, sample: GridCounterSample) -> SettlementOutcome:
        """Feed one grid counter sample through the accumulator."""
        rejected = _rejected_sample("grid counter", sample)
        if rejected is not None:
            return rejected
        ts_check = validate_timestamp(sample.timestamp_sec, now=self._clock())
        if not ts_check.is_valid:
            logger.warning("Rejecting grid counter sample: %s", ts_check.error)
            return SettlementOutcome(
                accepted=False,
                reason=REASON_INVALID_TELEMETRY,
                errors=[f"Invalid timestamp: {ts_check.error}"],
            )

        async with self.ledger.transaction() as txn:
            outcome = await self._grid_counters_locked(txn, sample)
            committed = list(txn.appended)

        await self._emit(committed)
        return outcome

    async def _grid_counters_locked(
        self,
        txn: LedgerTransaction,
        sample: GridCounterSample,
    ) -> SettlementOutcome:
        warnings: list[str] = []
        previous = self._load_accumulator(await txn.get(GRID_COUNTER_ACCUMULATOR_KEY), warnings)
        update = update_accumulator(previous, sample, self.settings.flush_interval_minutes)
        warnings.extend(update.recovery_actions)

        if update.reason == REASON_OUT_OF_ORDER:
            return SettlementOutcome(accepted=False, reason=update.reason, warnings=warnings)

        if update.reason != REASON_NO_FLUSH:
            logger.debug("[grid_counters] accumulator update: %s", update.reason)

        if update.flush is None:
            txn.stage(GRID_COUNTER_ACCUMULATOR_KEY, update.state.model_dump(mode="json"))
            return SettlementOutcome(accepted=True, reason=update.reason, warnings=warnings)

        price = self._price_provider()
        price_check = self.price_validator.validate(price)
        if not price_check.is_valid:
            # State is not staged: the next valid flush covers this window too.
            error = f"Invalid energy price: {price_check.error}"
            logger.error("%s", error)
            return SettlementOutcome(
                accepted=False,
                reason=REASON_INVALID_PRICE,
                warnings=warnings,
                errors=[error],
            )
        warnings.extend(price_check.warnings)

        entries = self._entries_for_flush(update.flush, float(price), price_check.warnings, txn)  # type: ignore[arg-type]
        for entry in entries:
            txn.append(entry)
            warnings.extend(entry.calculation_audit.validation_warnings)
        txn.stage(GRID_COUNTER_ACCUMULATOR_KEY, update.state.model_dump(mode="json"))

        return SettlementOutcome(
            accepted=True,
            reason=update.reason,
            entries=entries,
            warnings=list(dict.fromkeys(warnings)),
        )

    def _load_accumulator(
        self,
        raw: Any,
        warnings: list[str],
    ) -> GridCounterAccumulatorState | None:
        if raw is None:
            return None
        try:
            return GridCounterAccumulatorState.model_validate(raw)
        except ValidationError:
            warning = "Stored grid counter state unreadable, re-initializing baseline"
            logger.warning("%s", warning)
            warnings.append(warning)
            return None

    def _entries_for_flush(
        self,
        flush: GridCounterFlush,
        price: float,
        price_warnings: list[str],
        txn: LedgerTransaction,
    ) -> list[StatisticsEntry]:
        """Build the import (charging) and export (discharging) entries."""
        duration = max(0.0, flush.duration_minutes)
        history = recent_magnitudes(txn.entries, self.settings.outlier_history_size)
        legs = (
            ("charging", "grid_counters_import", flush.delta_input_raw,
             flush.start_input_raw, flush.end_input_raw),
            ("discharging", "grid_counters_export", flush.delta_output_raw,
             flush.start_output_raw, flush.end_output_raw),
        )

        entries: list[StatisticsEntry] = []
        for entry_type, method, delta_raw, start_raw, end_raw in legs:
            kwh = delta_raw / flush.divisor_raw_per_kwh
            if kwh <= 0:
                continue
            energy_check = validate_energy_amount(kwh)
            if not energy_check.is_valid:
                logger.warning("Discarding %s flush: %s", method, energy_check.error)
                continue

            warnings = [*price_warnings, *energy_check.warnings]
            outlier = detect_outlier(kwh, history, self.settings.outlier_z_threshold)
            if outlier.is_outlier:
                warning = f"Potential outlier detected: {kwh:.3f} kWh (z-score: {outlier.z_score:.2f})"
                logger.warning("%s", warning)
                warnings.append(warning)

            entry = StatisticsEntry(
                timestamp=flush.end_timestamp_sec,
                type=entry_type,  # type: ignore[arg-type]
                energy_amount=kwh if entry_type == "charging" else -kwh,
                duration=duration,
                price_at_time=price,
                start_energy_meter=start_raw,
                end_energy_meter=end_raw,
                calculation_audit=CalculationAudit(
                    calculation_method=method,
                    precision_loss=detect_precision_loss(
                        kwh, bankers_rounding(kwh, ENERGY_AMOUNT_DECIMALS)
                    ),
                    is_outlier=outlier.is_outlier,
                    validation_warnings=warnings,
                    recovery_actions=list(flush.recovery_actions),
                ),
            )
            self._log_transparency(entry, {
                "startTs": flush.start_timestamp_sec,
                "endTs": flush.end_timestamp_sec,
                "startRaw": start_raw,
                "endRaw": end_raw,
                "deltaRaw": delta_raw,
                "divisorRawPerKwh": flush.divisor_raw_per_kwh,
            })
            entries.append(entry)
        return entries

    # ------------------------------------------------------------------
    # Power integration
    # ------------------------------------------------------------------

    async def process_power_payload(self, raw: dict[str, Any]) -> SettlementOutcome:
        """Normalize a cloud status payload and process it."""
        sample = normalize_power(raw)
        if sample is None:
            return SettlementOutcome(
                accepted=False,
                reason=REASON_INVALID_TELEMETRY,
                errors=["Power payload missing or invalid"],
            )
        return await self.process_power(sample)

    async def process_power(self, sample: PowerSample) -> SettlementOutcome:
        """Feed one power sample through the integration tracker.

        The sample is observed on a copy of the tracker; the copy replaces
        the live tracker only once the ledger commit has succeeded, so a
        failed write leaves the open event intact for redelivery.
        """
        rejected = _rejected_sample("power", sample)
        if rejected is not None:
            return rejected
        ts_check = validate_timestamp(sample.timestamp_sec, now=self._clock())
        if not ts_check.is_valid:
            logger.warning("Rejecting power sample: %s", ts_check.error)
            return SettlementOutcome(
                accepted=False,
                reason=REASON_INVALID_TELEMETRY,
                errors=[f"Invalid timestamp: {ts_check.error}"],
            )

        async with self.ledger.transaction() as txn:
            tracker = self.tracker.copy()
            result = tracker.observe(
                sample,
                self._price_provider(),
                recent_magnitudes(txn.entries, self.settings.outlier_history_size),
            )
            txn.on_commit(lambda: self._adopt_tracker(tracker))
            for entry in result.entries:
                txn.append(entry)
                self._log_transparency(entry, {
                    "chargePowerW": sample.charge_power_w,
                    "dischargePowerW": sample.discharge_power_w,
                    "reportTime": sample.timestamp_sec,
                })
            committed = list(txn.appended)

        await self._emit(committed)
        return SettlementOutcome(
            accepted=result.reason not in (REASON_OUT_OF_ORDER, REASON_INVALID_PRICE),
            reason=result.reason,
            entries=result.entries,
            warnings=result.warnings,
            errors=result.errors,
        )

    # ------------------------------------------------------------------
    # Read-back and reports
    # ------------------------------------------------------------------

    async def metrics(self, now: float | None = None) -> ProfitMetrics:
        """Compute the values displayed for this device."""
        now = self._clock() if now is None else now
        entries = await self.ledger.read()
        ratio = self.settings.self_consumption_ratio
        today = daily_aggregate_for(entries, utc_date(now), ratio)
        price, is_fallback = self.price_validator.display_price(self._price_provider())
        breakdown = detailed_breakdown(entries, ratio)
        logger.debug(
            "Detailed breakdown: charge=%s kWh, discharge=%s kWh, cost=%s, net_profit=%s",
            breakdown.charge_energy,
            breakdown.discharge_energy,
            breakdown.cost,
            breakdown.net_profit,
        )
        return ProfitMetrics(
            daily_profit=today.total_profit,
            hourly_profit=hourly_profit(today.total_profit, now),
            daily_charge_energy=today.total_charge_energy,
            daily_discharge_energy=today.total_discharge_energy,
            breakdown=breakdown,
            current_price=price,
            price_is_fallback=is_fallback,
            entry_count=len(entries),
            calculation_timestamp=now,
        )

    async def export_statistics(self, fmt: str, time_range: str) -> str:
        """Render the ledger as JSON or CSV.

        Raises:
            ValueError: For an unknown format or range.
        """
        return audit.export_statistics(
            await self.ledger.read(), fmt, time_range, self.settings.self_consumption_ratio
        )

    async def verify_calculation(
        self,
        period: str,
        include_details: bool = False,
        now: float | None = None,
    ) -> str:
        """Render the verification report for *period*.

        Raises:
            ValueError: For an unknown period.
        """
        now = self._clock() if now is None else now
        return audit.verify_calculation(
            await self.ledger.read(),
            period,
            include_details,
            now,
            self.settings.self_consumption_ratio,
        )

    async def reset_statistics(self) -> None:
        """Clear the ledger, the accumulator state and the power tracker."""
        async with self.ledger.transaction() as txn:
            txn.clear()
            txn.stage(GRID_COUNTER_ACCUMULATOR_KEY, None)
            txn.on_commit(lambda: self._adopt_tracker(self._new_tracker()))
        logger.info("Statistics reset for device=%s", self.device_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _adopt_tracker(self, tracker: PowerIntegrationTracker) -> None:
        self.tracker = tracker

    def _log_transparency(self, entry: StatisticsEntry, inputs: dict[str, Any]) -> None:
        if not self.settings.statistics_transparency:
            return
        logger.info(
            "Calculation inputs for %s (%s): %s",
            entry.calculation_audit.calculation_method,
            entry.type,
            json.dumps(inputs),
        )

    async def _emit(self, entries: list[StatisticsEntry]) -> None:
        for entry in entries:
            for event in build_events(self.device_id, entry):
                try:
                    await self._sink.emit(event)
                except Exception:
                    logger.error(
                        "Event notification failed for device=%s", self.device_id, exc_info=True
                    )
