"""
INR to USD conversion for PayPal orders.

PayPal settles in USD, so INR order totals are converted at a configured rate
and a fixed percentage surcharge is added on top. All figures are surfaced to
the caller; the surcharge is never folded silently into the rate.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel, field_validator

CENT = Decimal("0.01")


def quantize_money(amount: Decimal) -> Decimal:
    """Round to two decimal places, half up."""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


class CurrencyConversion(BaseModel):
    """
    Result of converting an INR amount to a USD charge.

    Example: 1000 INR at 0.012 with a 7% fee
    usd_amount=12.00, fee=0.84, total=12.84
    """

    amount_inr: Decimal
    usd_amount: Decimal
    fee: Decimal
    total: Decimal
    exchange_rate: Decimal
    fee_percentage: Decimal

    model_config = {"frozen": True}

    @field_validator("amount_inr", "usd_amount", "fee", "total")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        """Ensure proper decimal precision for currency."""
        return quantize_money(v)


def convert_to_usd_with_fee(
    amount_inr: Decimal | int | float | str,
    exchange_rate: Decimal,
    fee_percentage: Decimal,
) -> CurrencyConversion:
    """
    Convert INR to USD and add the PayPal surcharge.

    `total` (not `usd_amount`) is what gets charged on PayPal.
    """
    amount = Decimal(str(amount_inr))
    if amount <= 0:
        raise ValueError("amount_inr must be positive")

    usd_amount = quantize_money(amount * exchange_rate)
    fee = quantize_money(usd_amount * fee_percentage / Decimal("100"))

    return CurrencyConversion(
        amount_inr=amount,
        usd_amount=usd_amount,
        fee=fee,
        total=usd_amount + fee,
        exchange_rate=exchange_rate,
        fee_percentage=fee_percentage,
    )


def to_minor_units(amount: Decimal) -> int:
    """Major units to integer minor units (rupees to paise, dollars to cents)."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return quantize_money(Decimal(amount) / 100)
