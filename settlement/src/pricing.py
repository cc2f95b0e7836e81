"""
Tariff validation gating every financial computation.

A price must be a finite, non-negative number no larger than
MAX_ENERGY_PRICE before it may be written into a ledger entry. Values
outside the typical band produce warnings but still validate.

The documented DISPLAY_FALLBACK_PRICE may be shown to the user when the
configured tariff is invalid. It is never written into the ledger.

CHANGELOG:
- 2026-10-16: Drop require(); callers gate on validate()
- 2026-10-13: Reject prices above MAX_ENERGY_PRICE instead of warning
- 2026-10-12: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import math

from settlement.src.models import ValidationResult

logger = logging.getLogger(__name__)

MAX_ENERGY_PRICE = 5.00
"""Upper bound in currency/kWh; catches cents entered as currency units."""

TYPICAL_PRICE_LOW = 0.05
TYPICAL_PRICE_HIGH = 1.00

DISPLAY_FALLBACK_PRICE = 0.30
"""Shown when the configured price is invalid. Display only."""


class PriceValidator:
    """Validates tariffs against a hard upper bound and a typical band.

    Args:
        max_price: Prices above this fail validation.
        typical_low: Positive prices below this produce a warning.
        typical_high: Prices above this (up to max_price) produce a warning.
    """

    def __init__(
        self,
        max_price: float = MAX_ENERGY_PRICE,
        typical_low: float = TYPICAL_PRICE_LOW,
        typical_high: float = TYPICAL_PRICE_HIGH,
    ) -> None:
        self.max_price = max_price
        self.typical_low = typical_low
        self.typical_high = typical_high

    def validate(self, price: object) -> ValidationResult:
        """Validate *price*; never raises."""
        if isinstance(price, bool) or not isinstance(price, (int, float)):
            return ValidationResult(is_valid=False, error="Energy price must be a number")
        if not math.isfinite(price):
            return ValidationResult(is_valid=False, error="Energy price must be a valid number")
        if price < 0:
            return ValidationResult(is_valid=False, error="Energy price cannot be negative")
        if price > self.max_price:
            return ValidationResult(
                is_valid=False,
                error=(
                    f"Energy price {price}/kWh exceeds maximum {self.max_price}/kWh "
                    "(check the unit: currency, not cents)"
                ),
            )

        warnings: list[str] = []
        if price == 0:
            warnings.append("Energy price is zero - calculations will show zero cost/savings")
        elif price < self.typical_low:
            warnings.append(f"Energy price unusually low: {price}/kWh < {self.typical_low}/kWh")
        elif price > self.typical_high:
            warnings.append(f"Energy price unusually high: {price}/kWh > {self.typical_high}/kWh")
        return ValidationResult(is_valid=True, warnings=warnings)

    def display_price(self, price: object) -> tuple[float, bool]:
        """Return ``(price, is_fallback)`` suitable for display.

        Falls back to DISPLAY_FALLBACK_PRICE when *price* is invalid.
        """
        result = self.validate(price)
        if not result.is_valid:
            logger.error(
                "Invalid energy price %r: %s. Displaying fallback %.2f/kWh",
                price,
                result.error,
                DISPLAY_FALLBACK_PRICE,
            )
            return DISPLAY_FALLBACK_PRICE, True
        return float(price), False  # type: ignore[arg-type]
