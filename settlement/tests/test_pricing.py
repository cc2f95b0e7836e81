"""
Tests for PriceValidator.

Verifies:
- Every price in (0, MAX_ENERGY_PRICE] validates.
- Non-numeric, non-finite, negative and too-large prices fail.
- Zero validates with a warning; out-of-band prices warn.
- display_price() falls back.

CHANGELOG:
- 2026-10-16: Drop require() coverage with the method
- 2026-10-13: Upper bound now fails validation
- 2026-10-12: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import math

import pytest
from settlement.src.pricing import (
    DISPLAY_FALLBACK_PRICE,
    MAX_ENERGY_PRICE,
    PriceValidator,
)


@pytest.fixture()
def validator() -> PriceValidator:
    return PriceValidator()


class TestValidPrices:
    @pytest.mark.parametrize("price", [0.05, 0.25, 0.30, 1.0, 2.75, MAX_ENERGY_PRICE])
    def test_positive_prices_up_to_bound_are_valid(
        self, validator: PriceValidator, price: float
    ) -> None:
        assert validator.validate(price).is_valid

    def test_typical_price_has_no_warnings(self, validator: PriceValidator) -> None:
        result = validator.validate(0.30)
        assert result.error is None
        assert result.warnings == []

    def test_integer_price_accepted(self, validator: PriceValidator) -> None:
        assert validator.validate(1).is_valid

    def test_zero_is_valid_with_warning(self, validator: PriceValidator) -> None:
        result = validator.validate(0.0)
        assert result.is_valid
        assert any("zero" in w for w in result.warnings)

    def test_low_price_warns(self, validator: PriceValidator) -> None:
        result = validator.validate(0.01)
        assert result.is_valid
        assert any("unusually low" in w for w in result.warnings)

    def test_high_price_warns(self, validator: PriceValidator) -> None:
        result = validator.validate(3.0)
        assert result.is_valid
        assert any("unusually high" in w for w in result.warnings)


class TestInvalidPrices:
    @pytest.mark.parametrize("price", [math.nan, math.inf, -math.inf])
    def test_non_finite(self, validator: PriceValidator, price: float) -> None:
        assert not validator.validate(price).is_valid

    @pytest.mark.parametrize("price", ["0.30", None, True, [0.3]])
    def test_non_numbers(self, validator: PriceValidator, price: object) -> None:
        assert not validator.validate(price).is_valid

    def test_negative(self, validator: PriceValidator) -> None:
        result = validator.validate(-0.01)
        assert not result.is_valid
        assert "negative" in result.error

    def test_above_upper_bound(self, validator: PriceValidator) -> None:
        """Cents entered as currency units are caught."""
        result = validator.validate(25.0)
        assert not result.is_valid
        assert "exceeds maximum" in result.error

    def test_custom_bound(self) -> None:
        assert not PriceValidator(max_price=1.0).validate(1.5).is_valid


class TestDisplayPrice:
    def test_valid_price_passed_through(self, validator: PriceValidator) -> None:
        assert validator.display_price(0.42) == (0.42, False)

    def test_invalid_price_falls_back(
        self, validator: PriceValidator, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.ERROR):
            price, is_fallback = validator.display_price(99.0)

        assert price == DISPLAY_FALLBACK_PRICE
        assert is_fallback is True
        assert "Invalid energy price" in caplog.text
