"""
Power integration tracker: instantaneous power readings to settled events.

Maintains a per-device charging-state machine (``idle`` / ``charging`` /
``discharging``) driven by cloud power samples:

- charge > 0 -> charging, else discharge > 0 -> discharging, else idle.
- While the state is unchanged and non-idle, energy is integrated between
  consecutive samples: trapezoidal when the previous power is known,
  rectangular otherwise. Each increment is checked against recent ledger
  history and flagged (never rejected) when it is an outlier.
- On a transition the interval up to the transition is integrated with the
  previous power, the ended event is finalized into a StatisticsEntry and a
  new event starts if the new state is non-idle.

Finalizing validates the tariff; an invalid tariff drops the event and is
reported in the result. No ledger I/O happens here: the engine appends the
returned entries.

CHANGELOG:
- 2026-10-16: Add copy() so callers can observe on a scratch tracker
- 2026-10-14: Integrate the interval up to a transition before finalizing
- 2026-10-13: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from settlement.src.financial import (
    DEFAULT_OUTLIER_THRESHOLD,
    ENERGY_AMOUNT_DECIMALS,
    bankers_rounding,
    detect_outlier,
    detect_precision_loss,
    validate_energy_amount,
)
from settlement.src.models import (
    CalculationAudit,
    ChargingState,
    PowerSample,
    PowerTrackerState,
    StatisticsEntry,
)
from settlement.src.pricing import PriceValidator

logger = logging.getLogger(__name__)

CALCULATION_METHOD = "power_integration"


@dataclass
class TrackerResult:
    """Outcome of observing one power sample.

    Attributes:
        reason: ``out_of_order``, ``idle``, ``started``, ``accumulating``,
            ``settled`` or ``invalid_price``.
        entries: Settled entries ready to append (zero or one).
        warnings: Non-fatal warnings raised while processing the sample.
        errors: Failures that caused an event to be dropped.
    """

    reason: str
    entries: list[StatisticsEntry] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def charging_state_for(sample: PowerSample) -> ChargingState:
    """Return the charging state implied by *sample*."""
    if sample.charge_power_w > 0:
        return "charging"
    if sample.discharge_power_w > 0:
        return "discharging"
    return "idle"


def _power_for(state: ChargingState, sample: PowerSample) -> float | None:
    if state == "charging":
        return sample.charge_power_w
    if state == "discharging":
        return sample.discharge_power_w
    return None


class PowerIntegrationTracker:
    """Integrates power samples into charge/discharge events for one device.

    Args:
        price_validator: Gate applied to the tariff when an event settles.
        outlier_threshold: z-score above which an increment is flagged.
        state: Optional snapshot to resume from.
    """

    def __init__(
        self,
        price_validator: PriceValidator | None = None,
        outlier_threshold: float = DEFAULT_OUTLIER_THRESHOLD,
        state: PowerTrackerState | None = None,
    ) -> None:
        self._validator = price_validator or PriceValidator()
        self._outlier_threshold = outlier_threshold
        self._state = state.model_copy(deep=True) if state is not None else PowerTrackerState()

    @property
    def state(self) -> PowerTrackerState:
        """Snapshot of the current state machine (a copy)."""
        return self._state.model_copy(deep=True)

    def copy(self) -> PowerIntegrationTracker:
        """Independent tracker resuming from the current state."""
        return PowerIntegrationTracker(
            price_validator=self._validator,
            outlier_threshold=self._outlier_threshold,
            state=self._state,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def observe(
        self,
        sample: PowerSample,
        price: object,
        history: list[float] | None = None,
    ) -> TrackerResult:
        """Advance the state machine with *sample*.

        Args:
            sample: Instantaneous charge/discharge power reading.
            price: Tariff in force now; only validated if an event settles.
            history: Recent non-zero ``|energy_amount|`` values from the
                ledger, oldest first, used for outlier detection.

        Returns:
            A TrackerResult with any settled entry.
        """
        history = history or []
        st = self._state

        if st.last_timestamp_sec is not None and sample.timestamp_sec <= st.last_timestamp_sec:
            logger.debug(
                "Ignoring out-of-order power sample (ts=%s <= last=%s)",
                sample.timestamp_sec,
                st.last_timestamp_sec,
            )
            return TrackerResult(reason="out_of_order")

        new_state = charging_state_for(sample)
        power_w = _power_for(new_state, sample)
        result = TrackerResult(reason="idle")

        if new_state == st.charging_state:
            if new_state != "idle":
                self._integrate(sample.timestamp_sec, power_w, history, result)
                result.reason = "accumulating"
        else:
            if st.charging_state != "idle" and st.event_start_sec is not None:
                # Close the open interval with the power seen before the switch.
                self._integrate(sample.timestamp_sec, None, history, result)
                self._finalize(sample.timestamp_sec, price, result)
            self._start(new_state, sample.timestamp_sec)
            if new_state != "idle" and result.reason == "idle":
                result.reason = "started"

        st = self._state
        st.last_timestamp_sec = sample.timestamp_sec
        st.last_power_w = power_w
        return result

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _start(self, charging_state: ChargingState, timestamp_sec: float) -> None:
        if charging_state != self._state.charging_state:
            logger.debug("Charging state %s -> %s", self._state.charging_state, charging_state)
        self._state = PowerTrackerState(
            charging_state=charging_state,
            event_start_sec=timestamp_sec if charging_state != "idle" else None,
        )

    def _integrate(
        self,
        timestamp_sec: float,
        power_w: float | None,
        history: list[float],
        result: TrackerResult,
    ) -> None:
        """Add the energy between the last sample and *timestamp_sec*.

        ``power_w=None`` integrates rectangularly with the previous power.
        """
        st = self._state
        if st.last_timestamp_sec is None or st.last_power_w is None:
            return
        elapsed_hours = (timestamp_sec - st.last_timestamp_sec) / 3600.0
        if elapsed_hours <= 0:
            return

        if power_w is None:
            average_w = st.last_power_w
        else:
            average_w = (st.last_power_w + power_w) / 2.0
        increment_kwh = average_w / 1000.0 * elapsed_hours
        if increment_kwh <= 0:
            return

        outlier = detect_outlier(increment_kwh, history, self._outlier_threshold)
        if outlier.is_outlier:
            warning = (
                f"Potential outlier detected: {increment_kwh:.3f} kWh "
                f"(z-score: {outlier.z_score:.2f})"
            )
            logger.warning("%s", warning)
            st.is_outlier = True
            st.warnings.append(warning)
            result.warnings.append(warning)

        st.cumulative_energy_kwh += increment_kwh

    def _finalize(self, timestamp_sec: float, price: object, result: TrackerResult) -> None:
        st = self._state
        assert st.event_start_sec is not None
        entry_type = st.charging_state
        duration_minutes = max(0.0, (timestamp_sec - st.event_start_sec) / 60.0)

        price_check = self._validator.validate(price)
        if not price_check.is_valid:
            error = f"Invalid energy price: {price_check.error}"
            logger.error("Dropping %s event: %s", entry_type, error)
            result.errors.append(error)
            result.reason = "invalid_price"
            return

        energy_check = validate_energy_amount(st.cumulative_energy_kwh)
        if not energy_check.is_valid:
            warning = f"Skipping {entry_type} event: {energy_check.error}"
            logger.warning("%s", warning)
            result.warnings.append(warning)
            return

        magnitude = st.cumulative_energy_kwh
        signed = magnitude if entry_type == "charging" else -magnitude
        precision_loss = detect_precision_loss(
            magnitude, bankers_rounding(magnitude, ENERGY_AMOUNT_DECIMALS)
        )

        entry = StatisticsEntry(
            timestamp=timestamp_sec,
            type=entry_type,  # type: ignore[arg-type]
            energy_amount=signed,
            duration=duration_minutes,
            price_at_time=float(price),  # type: ignore[arg-type]
            calculation_audit=CalculationAudit(
                calculation_method=CALCULATION_METHOD,
                precision_loss=precision_loss,
                is_outlier=st.is_outlier,
                validation_warnings=[
                    *st.warnings,
                    *price_check.warnings,
                    *energy_check.warnings,
                ],
                recovery_actions=list(st.recovery_actions),
            ),
        )
        logger.info(
            "Settled %s event: %.3f kWh over %.1f min at %.4f/kWh",
            entry_type,
            magnitude,
            duration_minutes,
            entry.price_at_time,
        )
        result.entries.append(entry)
        result.warnings.extend(price_check.warnings)
        result.reason = "settled"
