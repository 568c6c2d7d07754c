from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from apps.bookings.app.errors import ValidationError
from apps.bookings.app.pricing import compute_price, nights_between, round2, to_money


def test_price_three_nights_two_guests_with_cleaning_fee():
    p = compute_price(Decimal("100"), 3, 2, cleaning_fee=Decimal("50"))

    assert p.base_price == Decimal("600.00")
    assert p.service_fee == Decimal("60.00")
    assert p.cleaning_fee == Decimal("50.00")
    assert p.total_amount == Decimal("710.00")


def test_deposit_is_reported_but_not_charged():
    p = compute_price(100, 3, 2, cleaning_fee=50, deposit=200)

    assert p.security_deposit == Decimal("200.00")
    assert p.total_amount == Decimal("710.00")


def test_service_fee_rounds_half_up():
    # 10.05 * 0.10 = 1.005 -> 1.01 (banker's rounding would give 1.00)
    p = compute_price(Decimal("10.05"), 1, 1)

    assert p.base_price == Decimal("10.05")
    assert p.service_fee == Decimal("1.01")
    assert p.total_amount == Decimal("11.06")


def test_float_rates_do_not_leak_binary_noise():
    p = compute_price(0.1, 3, 1)

    assert p.base_price == Decimal("0.30")
    assert p.service_fee == Decimal("0.03")


def test_custom_service_fee_rate():
    p = compute_price(100, 2, 1, service_fee_rate=Decimal("0.15"))

    assert p.service_fee == Decimal("30.00")
    assert p.total_amount == Decimal("230.00")


def test_total_is_sum_of_parts_and_deterministic():
    for rate in ("0.99", "33.33", "100", "149.95", "1234.56"):
        for nights in range(1, 6):
            for guests in range(1, 4):
                for cleaning in ("0", "12.50", "49.99"):
                    a = compute_price(Decimal(rate), nights, guests, cleaning_fee=Decimal(cleaning))
                    b = compute_price(Decimal(rate), nights, guests, cleaning_fee=Decimal(cleaning))
                    assert a == b
                    assert a.total_amount == round2(a.base_price + a.cleaning_fee + a.service_fee)
                    assert a.total_amount.as_tuple().exponent == -2


@pytest.mark.parametrize(
    "kwargs, field",
    [
        (dict(nightly_rate=100, nights=0, guest_count=1), "nights"),
        (dict(nightly_rate=100, nights=2, guest_count=0), "guests_count"),
        (dict(nightly_rate=-1, nights=2, guest_count=1), "price_per_night"),
        (dict(nightly_rate=100, nights=2, guest_count=1, cleaning_fee=-5), "cleaning_fee"),
        (dict(nightly_rate=100, nights=2, guest_count=1, deposit=-5), "security_deposit"),
        (dict(nightly_rate="abc", nights=2, guest_count=1), "price_per_night"),
    ],
)
def test_invalid_inputs_are_rejected(kwargs, field):
    with pytest.raises(ValidationError) as excinfo:
        compute_price(**kwargs)
    assert excinfo.value.field == field


def test_non_finite_amounts_are_rejected():
    with pytest.raises(ValidationError):
        to_money(float("nan"), "refund_amount")
    with pytest.raises(ValidationError):
        to_money("Infinity")


def test_nights_between_is_calendar_day_difference():
    assert nights_between(date(2025, 6, 1), date(2025, 6, 4)) == 3
    # across a month boundary
    assert nights_between(date(2025, 6, 29), date(2025, 7, 2)) == 3
