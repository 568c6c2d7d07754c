"""
Stay pricing.

All money is ``Decimal`` rounded half-up to cents at every step, so the same
inputs always produce the same breakdown and ``total_amount`` is exactly
``base_price + cleaning_fee + service_fee``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from .config import SERVICE_FEE_RATE
from .errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Number = Union[Decimal, int, float, str]


def to_money(value: Number, field: str = "amount") -> Decimal:
    # floats go through str() so 0.1 becomes Decimal("0.1"), not its binary expansion
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} is not a number", field=field) from None
    if not d.is_finite():
        raise ValidationError(f"{field} is not a finite number", field=field)
    return d


def round2(value: Number) -> Decimal:
    return to_money(value).quantize(CENT, rounding=ROUND_HALF_UP)


def nights_between(check_in: date, check_out: date) -> int:
    return (check_out - check_in).days


@dataclass(frozen=True)
class PriceBreakdown:
    base_price: Decimal
    cleaning_fee: Decimal
    security_deposit: Decimal
    service_fee: Decimal
    total_amount: Decimal

    def as_dict(self) -> dict[str, Decimal]:
        return {
            "base_price": self.base_price,
            "cleaning_fee": self.cleaning_fee,
            "security_deposit": self.security_deposit,
            "service_fee": self.service_fee,
            "total_amount": self.total_amount,
        }


def compute_price(
    nightly_rate: Number,
    nights: int,
    guest_count: int,
    cleaning_fee: Number = ZERO,
    deposit: Number = ZERO,
    service_fee_rate: Number = SERVICE_FEE_RATE,
) -> PriceBreakdown:
    """
    Price a stay.

    The base scales with both nights and party size
    (``rate * nights * guests``); the platform service fee is a share of the
    base and the deposit is reported but kept out of the total.
    """
    if nights < 1:
        raise ValidationError("stay must be at least one night", field="nights")
    if guest_count < 1:
        raise ValidationError("at least one guest is required", field="guests_count")
    rate = to_money(nightly_rate, "price_per_night")
    cleaning = to_money(cleaning_fee, "cleaning_fee")
    dep = to_money(deposit, "security_deposit")
    fee_rate = to_money(service_fee_rate, "service_fee_rate")
    for name, v in (("price_per_night", rate), ("cleaning_fee", cleaning), ("security_deposit", dep), ("service_fee_rate", fee_rate)):
        if v < 0:
            raise ValidationError(f"{name} must not be negative", field=name)

    base = round2(rate * nights * guest_count)
    cleaning = round2(cleaning)
    service = round2(base * fee_rate)
    total = round2(base + cleaning + service)
    return PriceBreakdown(
        base_price=base,
        cleaning_fee=cleaning,
        security_deposit=round2(dep),
        service_fee=service,
        total_amount=total,
    )
