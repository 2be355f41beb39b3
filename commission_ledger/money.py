"""Fixed-point currency helpers. Currency never touches float."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from .errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def to_money(value: Union[Decimal, int, str], field: str = "amount") -> Decimal:
    """Coerce to a 2-place Decimal, rejecting floats and extra precision."""
    if isinstance(value, float):
        raise ValidationError(f"{field} must be a Decimal or string, not float")
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} is not a valid amount: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"{field} is not a valid amount: {value!r}")
    if amount != amount.quantize(CENT):
        raise ValidationError(f"{field} must have at most 2 decimal places: {value}")
    return amount.quantize(CENT)


def commission(reference_amount: Decimal, rate: Decimal) -> Decimal:
    """reference_amount * rate / 100, rounded half-up to cents."""
    return (reference_amount * rate / HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)
