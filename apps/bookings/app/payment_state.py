"""
Payment status lifecycle.

Independent of the reservation status except for one edge: a payment that
becomes ``paid`` while the reservation is still ``pending`` confirms the
reservation. Every accepted update leaves a ``PaymentHistory`` row.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

from .actors import Actor, acting_role, require_party
from .errors import Forbidden, InvalidTransition, ValidationError
from .models import Booking, PaymentHistory, PaymentStatus, ReservationStatus, utcnow
from .reservation_state import ReservationStateMachine, require_rows

PS = PaymentStatus

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PS.PENDING: frozenset({PS.PAID, PS.FAILED, PS.PARTIAL}),
    PS.PARTIAL: frozenset({PS.PAID, PS.FAILED, PS.REFUNDED}),
    PS.PAID: frozenset({PS.REFUNDED, PS.PARTIAL}),
    PS.FAILED: frozenset({PS.PAID, PS.PARTIAL, PS.PENDING}),
    PS.REFUNDED: frozenset(),
}

require_rows(PAYMENT_TRANSITIONS, PS, "payment")

# Reached only through the refund processor, which also writes the refund record.
REFUND_DRIVEN = frozenset({PS.REFUNDED})
REFUNDABLE = frozenset({PS.PAID, PS.PARTIAL})

_MAX_METHOD = 50
_MAX_REFERENCE = 100


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in PAYMENT_TRANSITIONS[current]


def parse_payment_status(value: Union[str, PaymentStatus]) -> PaymentStatus:
    try:
        return PS(value)
    except ValueError:
        raise ValidationError(f"invalid payment status: {value!r}", field="payment_status") from None


@dataclass(frozen=True)
class PaymentChange:
    booking_id: str
    previous: PaymentStatus
    current: PaymentStatus
    history: PaymentHistory
    auto_confirmed: bool = False

    @property
    def status_changed(self) -> bool:
        return self.previous != self.current


class PaymentStateMachine:
    def __init__(self, reservations: ReservationStateMachine, clock: Callable[[], datetime] = utcnow):
        self.reservations = reservations
        self.clock = clock

    def update(
        self,
        booking: Booking,
        actor: Actor,
        *,
        new_status: Optional[Union[str, PaymentStatus]] = None,
        method: Optional[str] = None,
        reference: Optional[str] = None,
        note: Optional[str] = None,
    ) -> PaymentChange:
        if new_status is None and method is None and reference is None and note is None:
            raise ValidationError("no payment fields provided for update")
        if method is not None and len(method) > _MAX_METHOD:
            raise ValidationError(f"payment method longer than {_MAX_METHOD} characters", field="payment_method")
        if reference is not None and len(reference) > _MAX_REFERENCE:
            raise ValidationError(f"payment reference longer than {_MAX_REFERENCE} characters", field="payment_reference")

        require_party(actor, booking, "update payment for this booking")
        current = PS(booking.payment_status)
        if current == PS.REFUNDED and not actor.is_admin:
            raise Forbidden("only administrators can modify refunded payments", field="payment_status")

        target = current if new_status is None else parse_payment_status(new_status)
        if target != current:
            if not can_transition(current, target):
                raise InvalidTransition(current.value, target.value, field="payment_status")
            if target in REFUND_DRIVEN:
                raise InvalidTransition(
                    current.value,
                    target.value,
                    "payments become refunded by processing a refund",
                    field="payment_status",
                )

        now = self.clock()
        booking.payment_status = target
        if method is not None:
            booking.payment_method = method
        if reference is not None:
            booking.payment_reference = reference
        booking.updated_at = now
        history = self.record(booking, current, target, actor, method=method, reference=reference, note=note)

        auto_confirmed = False
        if target == PS.PAID and ReservationStatus(booking.status) == ReservationStatus.PENDING:
            self.reservations.apply_system(
                booking, ReservationStatus.CONFIRMED, actor, acting_role(actor, booking)
            )
            auto_confirmed = True
        return PaymentChange(
            booking_id=booking.id,
            previous=current,
            current=target,
            history=history,
            auto_confirmed=auto_confirmed,
        )

    def settle_refund(self, booking: Booking, target: PaymentStatus, actor: Actor, note: str) -> PaymentChange:
        """Payment side of a refund; authority was checked by the refund processor."""
        current = PS(booking.payment_status)
        if current not in REFUNDABLE:
            raise InvalidTransition(current.value, target.value, field="payment_status")
        if target != current and not can_transition(current, target):
            raise InvalidTransition(current.value, target.value, field="payment_status")
        booking.payment_status = target
        booking.updated_at = self.clock()
        history = self.record(booking, current, target, actor, note=note)
        return PaymentChange(booking_id=booking.id, previous=current, current=target, history=history)

    def record(
        self,
        booking: Booking,
        previous: PaymentStatus,
        new: PaymentStatus,
        actor: Actor,
        *,
        method: Optional[str] = None,
        reference: Optional[str] = None,
        note: Optional[str] = None,
    ) -> PaymentHistory:
        return PaymentHistory(
            booking_id=booking.id,
            previous_status=previous,
            new_status=new,
            payment_method=method,
            payment_reference=reference,
            updated_by=actor.id,
            notes=note,
            created_at=self.clock(),
        )
