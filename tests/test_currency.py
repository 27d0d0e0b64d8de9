"""
Unit tests for INR to USD conversion and minor-unit helpers.
"""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from payment_reconciliation.core.currency import (
    CurrencyConversion,
    convert_to_usd_with_fee,
    from_minor_units,
    quantize_money,
    to_minor_units,
)

RATE = Decimal("0.012")
FEE = Decimal("7")


class TestConvertToUsdWithFee:
    """Test suite for convert_to_usd_with_fee."""

    @pytest.mark.unit
    def test_thousand_rupees(self) -> None:
        """1000 INR at 0.012 with a 7% fee charges 12.84 USD."""
        result = convert_to_usd_with_fee(1000, RATE, FEE)

        assert result.amount_inr == Decimal("1000.00")
        assert result.usd_amount == Decimal("12.00")
        assert result.fee == Decimal("0.84")
        assert result.total == Decimal("12.84")
        assert result.exchange_rate == RATE
        assert result.fee_percentage == FEE

    @pytest.mark.unit
    def test_total_is_usd_plus_fee(self) -> None:
        """Total is always the sum of the rounded parts."""
        for amount in ("1", "99.99", "1234.56", "50000"):
            result = convert_to_usd_with_fee(amount, RATE, FEE)
            assert result.total == result.usd_amount + result.fee

    @pytest.mark.unit
    def test_rounding_is_half_up_to_cents(self) -> None:
        """Sub-cent results round half up."""
        # 125 * 0.012 = 1.50; 1.50 * 7% = 0.105 -> 0.11
        result = convert_to_usd_with_fee(125, RATE, FEE)

        assert result.usd_amount == Decimal("1.50")
        assert result.fee == Decimal("0.11")
        assert result.total == Decimal("1.61")

    @pytest.mark.unit
    @pytest.mark.parametrize("amount", [0, -1, "-0.01"])
    def test_non_positive_amount_rejected(self, amount: object) -> None:
        """Zero and negative amounts are rejected."""
        with pytest.raises(ValueError, match="must be positive"):
            convert_to_usd_with_fee(amount, RATE, FEE)

    @pytest.mark.unit
    def test_conversion_is_frozen(self) -> None:
        """Conversion results cannot be edited after the fact."""
        result = convert_to_usd_with_fee(1000, RATE, FEE)

        with pytest.raises(ValidationError):
            result.total = Decimal("1.00")

    @pytest.mark.unit
    def test_model_quantizes_money_fields(self) -> None:
        """Money fields are stored at two decimal places."""
        conversion = CurrencyConversion(
            amount_inr=Decimal("10.005"),
            usd_amount=Decimal("0.1206"),
            fee=Decimal("0.0084"),
            total=Decimal("0.129"),
            exchange_rate=RATE,
            fee_percentage=FEE,
        )

        assert conversion.amount_inr == Decimal("10.01")
        assert conversion.usd_amount == Decimal("0.12")
        assert conversion.fee == Decimal("0.01")
        assert conversion.total == Decimal("0.13")


class TestMinorUnits:
    """Test suite for minor unit conversion."""

    @pytest.mark.unit
    def test_rupees_to_paise(self) -> None:
        assert to_minor_units(Decimal("1000")) == 100000
        assert to_minor_units(Decimal("10.50")) == 1050
        assert to_minor_units(Decimal("0.015")) == 2

    @pytest.mark.unit
    def test_paise_to_rupees(self) -> None:
        assert from_minor_units(100000) == Decimal("1000.00")
        assert from_minor_units(1) == Decimal("0.01")

    @pytest.mark.unit
    def test_quantize_money(self) -> None:
        assert quantize_money(Decimal("2.345")) == Decimal("2.35")
        assert quantize_money(Decimal("2.344")) == Decimal("2.34")
