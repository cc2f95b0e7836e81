"""
Numeric helpers for financial and energy calculations.

Pure functions: no I/O, no clock unless a reference time is passed in.

- bankers_rounding: round half to even on the decimal representation.
- safe_divide: division with zero/non-finite protection.
- detect_precision_loss: relative error between exact and derived values.
- validate_energy_amount / validate_timestamp: bounds checks returning a
  ValidationResult instead of raising.
- detect_outlier: z-score of a value against recent history.

CHANGELOG:
- 2026-10-13: Add detect_outlier
- 2026-10-12: Initial creation

TODO:
- None
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal

from settlement.src.models import ValidationResult

CURRENCY_DECIMALS = 2
ENERGY_PRICE_DECIMALS = 4
ENERGY_AMOUNT_DECIMALS = 3

MAX_ENERGY_AMOUNT_KWH = 1000.0
MIN_ENERGY_AMOUNT_KWH = 0.00001
PRECISION_THRESHOLD = 1e-10
MAX_CLOCK_SKEW_S = 300.0

DEFAULT_OUTLIER_THRESHOLD = 2.5
MIN_OUTLIER_HISTORY = 3


def bankers_rounding(value: float, decimals: int = CURRENCY_DECIMALS) -> float:
    """Round *value* to *decimals* places, ties to even.

    Operates on the shortest decimal representation of the float so that
    e.g. 0.125 rounds to 0.12 and 0.135 rounds to 0.14 regardless of the
    binary approximation.

    Raises:
        ValueError: If *value* is NaN or infinite.
    """
    if not math.isfinite(value):
        raise ValueError(f"Invalid value for rounding: {value}")
    quantum = Decimal(1).scaleb(-decimals)
    return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_EVEN))


def safe_divide(
    numerator: float,
    denominator: float,
    default: float = 0.0,
) -> float:
    """Divide, returning *default* for non-finite input, |denominator| below
    PRECISION_THRESHOLD, or a non-finite result."""
    if not math.isfinite(numerator) or not math.isfinite(denominator):
        return default
    if abs(denominator) < PRECISION_THRESHOLD:
        return default
    result = numerator / denominator
    if not math.isfinite(result):
        return default
    return result


def detect_precision_loss(original: float, calculated: float) -> float:
    """Return the relative error of *calculated* vs *original*.

    Returns 0.0 when either value is non-finite, *original* is zero, or the
    error is at or below PRECISION_THRESHOLD.
    """
    if not math.isfinite(original) or not math.isfinite(calculated) or original == 0:
        return 0.0
    relative_error = abs((calculated - original) / original)
    return relative_error if relative_error > PRECISION_THRESHOLD else 0.0


def validate_energy_amount(energy_kwh: float) -> ValidationResult:
    """Validate the magnitude of an energy amount in kWh."""
    if not math.isfinite(energy_kwh):
        return ValidationResult(is_valid=False, error="Energy amount must be a valid number")
    if energy_kwh == 0:
        return ValidationResult(is_valid=False, error="Energy amount cannot be zero")
    magnitude = abs(energy_kwh)
    if magnitude > MAX_ENERGY_AMOUNT_KWH:
        return ValidationResult(
            is_valid=False,
            error=(
                f"Energy amount exceeds maximum: {magnitude} kWh > "
                f"{MAX_ENERGY_AMOUNT_KWH} kWh"
            ),
        )
    warnings: list[str] = []
    if magnitude < MIN_ENERGY_AMOUNT_KWH:
        warnings.append(f"Energy amount very small: {magnitude} kWh")
    return ValidationResult(is_valid=True, warnings=warnings)


def validate_timestamp(timestamp: float, *, now: float) -> ValidationResult:
    """Validate a settlement timestamp (seconds) against reference time *now*."""
    if not math.isfinite(timestamp):
        return ValidationResult(is_valid=False, error="Timestamp must be a valid number")
    if timestamp <= 0:
        return ValidationResult(is_valid=False, error="Timestamp must be positive")
    if timestamp > now + MAX_CLOCK_SKEW_S:
        return ValidationResult(is_valid=False, error="Timestamp cannot be in the future")
    return ValidationResult(is_valid=True)


@dataclass(frozen=True)
class OutlierResult:
    """Outcome of a z-score outlier check.

    Attributes:
        is_outlier: Whether z_score exceeded the threshold.
        z_score: Absolute z-score of the value (0 when undecidable).
        mean: Mean of the history (the value itself when history is short).
        std_dev: Population standard deviation of the history.
    """

    is_outlier: bool
    z_score: float
    mean: float
    std_dev: float


def detect_outlier(
    value: float,
    history: list[float],
    threshold: float = DEFAULT_OUTLIER_THRESHOLD,
) -> OutlierResult:
    """Compare *value* against the mean and spread of *history*.

    At least MIN_OUTLIER_HISTORY values with non-zero spread are required;
    otherwise the value is never an outlier.
    """
    if len(history) < MIN_OUTLIER_HISTORY:
        return OutlierResult(is_outlier=False, z_score=0.0, mean=value, std_dev=0.0)

    mean = math.fsum(history) / len(history)
    variance = math.fsum((v - mean) ** 2 for v in history) / len(history)
    std_dev = math.sqrt(variance)
    if std_dev == 0:
        return OutlierResult(is_outlier=False, z_score=0.0, mean=mean, std_dev=0.0)

    z_score = abs((value - mean) / std_dev)
    return OutlierResult(
        is_outlier=z_score > threshold,
        z_score=z_score,
        mean=mean,
        std_dev=std_dev,
    )
