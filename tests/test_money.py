from decimal import Decimal

import pytest

from models import BillingCycle
from money import cents_to_amount, monthly_equivalent_cents, round_currency, to_cents


def test_round_currency_is_half_up_in_decimal() -> None:
    assert round_currency(2.675) == 2.68
    assert round_currency(1.005) == 1.01
    assert round_currency(Decimal("-0.125")) == -0.13
    assert round_currency(0.1 + 0.2) == 0.3


def test_to_cents_rounds_half_up() -> None:
    assert to_cents(Decimal("10.005")) == 1001
    assert to_cents(19.99) == 1999
    assert to_cents(5) == 500


def test_to_cents_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        to_cents("twelve")


def test_cents_to_amount() -> None:
    assert cents_to_amount(12345) == 123.45
    assert cents_to_amount(0) == 0.0


def test_yearly_cycle_is_normalized_to_monthly() -> None:
    assert monthly_equivalent_cents(12000, BillingCycle.yearly) == Decimal(1000)
    assert monthly_equivalent_cents(999, BillingCycle.monthly) == Decimal(999)
    assert round_currency(monthly_equivalent_cents(1000, BillingCycle.yearly) / 100) == 0.83
