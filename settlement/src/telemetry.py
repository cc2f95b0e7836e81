"""
Pure normalizers that turn raw device payloads into telemetry samples.

Two payload shapes are supported:

- Local (grid counter) payloads carrying the cumulative counters
  ``total_grid_input_energy`` / ``total_grid_output_energy`` in raw units.
  The raw-per-kWh divisor depends on the firmware revision.
- Cloud (power) payloads carrying instantaneous ``charge`` / ``discharge``
  power in watts and a ``report_time`` in epoch seconds.

These are pure functions: no side effects, no I/O, no clock. The timestamp
is passed in by the caller where the payload carries none. Invalid payloads
yield ``None`` and a warning, never an exception.

CHANGELOG:
- 2026-10-13: Accept numeric strings from the cloud payload
- 2026-10-12: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import math
from typing import Any

from settlement.src.errors import InvalidTelemetryError
from settlement.src.models import GridCounterSample, PowerSample

logger = logging.getLogger(__name__)

DIVISOR_FIRMWARE_THRESHOLD = 154
"""Firmware revisions at or above this report counters in 0.1 kWh units."""

_DIVISOR_NEW_FIRMWARE = 10.0
_DIVISOR_LEGACY_FIRMWARE = 100.0


def divisor_for_firmware(firmware: int | float | None) -> float:
    """Return the raw-units-per-kWh divisor for a firmware revision.

    Unknown firmware (``None``) is treated as legacy.
    """
    if firmware is not None and firmware >= DIVISOR_FIRMWARE_THRESHOLD:
        return _DIVISOR_NEW_FIRMWARE
    return _DIVISOR_LEGACY_FIRMWARE


def _require_finite(raw: dict[str, Any], key: str) -> float:
    """Return ``raw[key]`` as a finite float.

    Raises:
        InvalidTelemetryError: If the key is missing or not a finite number.
    """
    value = raw.get(key)
    if value is None or isinstance(value, bool):
        raise InvalidTelemetryError(key, value)
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidTelemetryError(key, value) from exc
    if not math.isfinite(number):
        raise InvalidTelemetryError(key, value)
    return number


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize_grid_counters(
    raw: dict[str, Any],
    *,
    ts: float,
    firmware: int | float | None = None,
) -> GridCounterSample | None:
    """Convert a local device payload into a GridCounterSample.

    Args:
        raw: Device payload containing ``total_grid_input_energy`` and
            ``total_grid_output_energy`` in raw counter units.
        ts: Sample timestamp in epoch seconds.
        firmware: Firmware revision used to select the divisor.

    Returns:
        A GridCounterSample, or ``None`` if a counter is missing, non-finite
        or negative.
    """
    try:
        input_raw = _require_finite(raw, "total_grid_input_energy")
        output_raw = _require_finite(raw, "total_grid_output_energy")
    except InvalidTelemetryError as exc:
        logger.warning("Grid counters missing/invalid in payload, skipping: %s", exc)
        return None

    if input_raw < 0 or output_raw < 0:
        logger.warning(
            "Grid counters negative (input=%s, output=%s), skipping",
            input_raw,
            output_raw,
        )
        return None

    if not math.isfinite(ts):
        logger.warning("Grid counter timestamp invalid (%s), skipping", ts)
        return None

    return GridCounterSample(
        timestamp_sec=ts,
        input_raw=input_raw,
        output_raw=output_raw,
        divisor_raw_per_kwh=divisor_for_firmware(firmware),
    )


def normalize_power(raw: dict[str, Any]) -> PowerSample | None:
    """Convert a cloud status payload into a PowerSample.

    Args:
        raw: Payload containing ``charge`` and ``discharge`` in watts and
            ``report_time`` in epoch seconds.

    Returns:
        A PowerSample, or ``None`` if any field is missing or non-finite.
    """
    try:
        charge = _require_finite(raw, "charge")
        discharge = _require_finite(raw, "discharge")
        report_time = _require_finite(raw, "report_time")
    except InvalidTelemetryError as exc:
        logger.warning("Power payload invalid, skipping: %s", exc)
        return None

    return PowerSample(
        timestamp_sec=report_time,
        charge_power_w=charge,
        discharge_power_w=discharge,
    )
