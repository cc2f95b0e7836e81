"""
Grid counter accumulator: cumulative import/export counters to flush records.

The device reports two monotonically increasing counters (grid import and
grid export) in raw units. This module turns a stream of such samples into
bounded-size interval deltas, flushed at most once per ``flush_interval``
and always at a UTC day boundary so daily aggregates stay day-aligned.

update_accumulator() is a pure function of ``(previous_state, sample)``; the
caller persists the returned state between invocations. It is unit-agnostic:
raw deltas are converted to kWh by the caller using the sample's divisor.

Outcome reasons:
- ``initialized``: first sample, baseline established.
- ``out_of_order``: timestamp <= last seen, sample ignored, state unchanged.
- ``divisor_changed``: unit change, baseline re-initialized.
- ``counter_reset``: a counter decreased; this sample's contribution is
  discarded but the baseline advances, and a recovery action is queued for
  the entries of the next flush.
- ``no_flush`` / ``flushed``: deltas accumulated, optionally flushed.

CHANGELOG:
- 2026-10-14: Counter reset keeps the accumulation and resyncs the baseline
- 2026-10-12: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from settlement.src.models import (
    GridCounterAccumulatorState,
    GridCounterFlush,
    GridCounterSample,
)

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL_MINUTES = 60.0

REASON_INITIALIZED = "initialized"
REASON_OUT_OF_ORDER = "out_of_order"
REASON_DIVISOR_CHANGED = "divisor_changed"
REASON_COUNTER_RESET = "counter_reset"
REASON_NO_FLUSH = "no_flush"
REASON_FLUSHED = "flushed"


@dataclass(frozen=True)
class AccumulatorUpdate:
    """Result of feeding one sample to the accumulator.

    Attributes:
        state: State to persist (the previous state object when unchanged).
        reason: One of the ``REASON_*`` constants.
        flush: Flush record when the window was closed, else ``None``.
        recovery_actions: Corrective actions taken for this sample.
    """

    state: GridCounterAccumulatorState
    reason: str
    flush: GridCounterFlush | None = None
    recovery_actions: list[str] = field(default_factory=list)


def _utc_day(timestamp_sec: float) -> str:
    return datetime.fromtimestamp(timestamp_sec, tz=UTC).date().isoformat()


def _initial_state(sample: GridCounterSample) -> GridCounterAccumulatorState:
    return GridCounterAccumulatorState(
        divisor_raw_per_kwh=sample.divisor_raw_per_kwh,
        last_timestamp_sec=sample.timestamp_sec,
        last_input_raw=sample.input_raw,
        last_output_raw=sample.output_raw,
        acc_start_timestamp_sec=sample.timestamp_sec,
        acc_start_input_raw=sample.input_raw,
        acc_start_output_raw=sample.output_raw,
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def update_accumulator(
    previous: GridCounterAccumulatorState | None,
    sample: GridCounterSample,
    flush_interval_minutes: float = DEFAULT_FLUSH_INTERVAL_MINUTES,
) -> AccumulatorUpdate:
    """Feed *sample* into the accumulator and decide whether to flush.

    Args:
        previous: Persisted state, or ``None`` for the first sample.
        sample: New grid counter reading.
        flush_interval_minutes: Minimum window length before a time-based
            flush. A UTC day crossing flushes regardless.

    Returns:
        An AccumulatorUpdate. The input state is never mutated.
    """
    if previous is None:
        return AccumulatorUpdate(state=_initial_state(sample), reason=REASON_INITIALIZED)

    if sample.timestamp_sec <= previous.last_timestamp_sec:
        logger.debug(
            "Ignoring out-of-order grid counter sample (ts=%s <= last=%s)",
            sample.timestamp_sec,
            previous.last_timestamp_sec,
        )
        return AccumulatorUpdate(state=previous, reason=REASON_OUT_OF_ORDER)

    if sample.divisor_raw_per_kwh != previous.divisor_raw_per_kwh:
        logger.warning(
            "Grid counter divisor changed (%s -> %s), re-initializing baseline",
            previous.divisor_raw_per_kwh,
            sample.divisor_raw_per_kwh,
        )
        return AccumulatorUpdate(state=_initial_state(sample), reason=REASON_DIVISOR_CHANGED)

    delta_input = sample.input_raw - previous.last_input_raw
    delta_output = sample.output_raw - previous.last_output_raw

    if delta_input < 0 or delta_output < 0:
        action = (
            f"Counter reset at ts={sample.timestamp_sec:.0f}: "
            f"input {previous.last_input_raw}->{sample.input_raw}, "
            f"output {previous.last_output_raw}->{sample.output_raw}; "
            "sample discarded, baseline resynced"
        )
        logger.warning("Grid counter reset detected: %s", action)
        state = previous.model_copy(
            update={
                "last_timestamp_sec": sample.timestamp_sec,
                "last_input_raw": sample.input_raw,
                "last_output_raw": sample.output_raw,
                "pending_recovery_actions": [*previous.pending_recovery_actions, action],
            }
        )
        return AccumulatorUpdate(state=state, reason=REASON_COUNTER_RESET, recovery_actions=[action])

    acc_input = previous.acc_input_delta_raw + delta_input
    acc_output = previous.acc_output_delta_raw + delta_output
    duration_minutes = (sample.timestamp_sec - previous.acc_start_timestamp_sec) / 60.0
    crossed_day = _utc_day(sample.timestamp_sec) != _utc_day(previous.acc_start_timestamp_sec)

    if not crossed_day and duration_minutes < flush_interval_minutes:
        state = previous.model_copy(
            update={
                "last_timestamp_sec": sample.timestamp_sec,
                "last_input_raw": sample.input_raw,
                "last_output_raw": sample.output_raw,
                "acc_input_delta_raw": acc_input,
                "acc_output_delta_raw": acc_output,
            }
        )
        return AccumulatorUpdate(state=state, reason=REASON_NO_FLUSH)

    flush = GridCounterFlush(
        start_timestamp_sec=previous.acc_start_timestamp_sec,
        end_timestamp_sec=sample.timestamp_sec,
        duration_minutes=duration_minutes,
        start_input_raw=previous.acc_start_input_raw,
        end_input_raw=previous.acc_start_input_raw + acc_input,
        delta_input_raw=acc_input,
        start_output_raw=previous.acc_start_output_raw,
        end_output_raw=previous.acc_start_output_raw + acc_output,
        delta_output_raw=acc_output,
        divisor_raw_per_kwh=previous.divisor_raw_per_kwh,
        recovery_actions=list(previous.pending_recovery_actions),
    )
    logger.info(
        "Flushing grid counters: %.1f min, delta_input=%s, delta_output=%s%s",
        duration_minutes,
        acc_input,
        acc_output,
        " (UTC day boundary)" if crossed_day else "",
    )
    return AccumulatorUpdate(
        state=_initial_state(sample),
        reason=REASON_FLUSHED,
        flush=flush,
    )
