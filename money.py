from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from models import BillingCycle

_CENT = Decimal("0.01")

Number = Union[int, float, Decimal]


def to_cents(amount: Number) -> int:
    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def round_currency(value: Number) -> float:
    """Round a decimal amount to 2 places, half-up, without binary-float drift."""
    return float(Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


def cents_to_amount(cents: Number) -> float:
    return round_currency(Decimal(str(cents)) / 100)


def monthly_equivalent_cents(amount_cents: int, cycle: BillingCycle) -> Decimal:
    if cycle == BillingCycle.yearly:
        return Decimal(amount_cents) / 12
    return Decimal(amount_cents)
