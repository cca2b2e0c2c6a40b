"""Fee computation."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from unitpay_engine.exceptions import ValidationError

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class FeeQuote:
    """Fee terms fixed on an intent at creation."""

    amount: Decimal
    fee_rate: Decimal
    fee_amount: Decimal
    total_amount: Decimal


def to_decimal(value: object, field_name: str) -> Decimal:
    """Parse a money-like input into a Decimal."""
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{field_name} must be a number") from e
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be finite")
    return result


def quote_fee(amount: Decimal, fee_rate: Decimal, precision: Decimal = Decimal("0.01")) -> FeeQuote:
    """Compute fee and total for ``amount`` at ``fee_rate`` percent.

    fee = amount * rate / 100, total = amount + fee, both rounded half-up
    to ``precision``.
    """
    if amount <= 0:
        raise ValidationError("amount must be positive")
    if fee_rate < 0 or fee_rate >= HUNDRED:
        raise ValidationError("fee_rate must be in [0, 100)")

    amount = amount.quantize(precision, rounding=ROUND_HALF_UP)
    if amount <= 0:
        raise ValidationError("amount is below the smallest unit")
    fee_amount = (amount * fee_rate / HUNDRED).quantize(precision, rounding=ROUND_HALF_UP)
    return FeeQuote(
        amount=amount,
        fee_rate=fee_rate,
        fee_amount=fee_amount,
        total_amount=amount + fee_amount,
    )
