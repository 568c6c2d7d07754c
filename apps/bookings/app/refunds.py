from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from .actors import Actor
from .errors import Forbidden, InvalidTransition, InvariantViolation, ValidationError
from .models import ActorRole, Booking, PaymentStatus, Refund, ReservationStatus, utcnow
from .payment_state import REFUNDABLE, PaymentChange, PaymentStateMachine
from .pricing import CENT, ZERO, to_money
from .reservation_state import ReservationStateMachine, ReservationTransition

RS = ReservationStatus


@dataclass(frozen=True)
class RefundOutcome:
    refund: Refund
    payment: PaymentChange
    full: bool
    refunded_total: Decimal
    reservation: list[ReservationTransition] = field(default_factory=list)


class RefundProcessor:
    """
    Validates and records refunds against a booking.

    Amounts are checked against the booking total and against the running
    total of earlier refunds, so several partial refunds can never add up to
    more than was charged. ``total_amount`` itself is never changed.
    """

    def __init__(
        self,
        payments: PaymentStateMachine,
        reservations: ReservationStateMachine,
        default_method: str = "original_payment",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.payments = payments
        self.reservations = reservations
        self.default_method = default_method
        self.clock = clock

    def process(
        self,
        booking: Booking,
        amount,
        actor: Actor,
        *,
        reason: Optional[str] = None,
        method: Optional[str] = None,
        already_refunded: Decimal = ZERO,
    ) -> RefundOutcome:
        if not actor.is_admin:
            raise Forbidden("only administrators can process refunds")

        current = PaymentStatus(booking.payment_status)
        if current == PaymentStatus.REFUNDED:
            raise InvalidTransition(
                current.value, PaymentStatus.REFUNDED.value,
                "booking has already been refunded", field="payment_status",
            )
        if current not in REFUNDABLE:
            raise InvalidTransition(
                current.value, PaymentStatus.REFUNDED.value,
                f"can only refund paid or partially paid bookings (payment is {current.value})",
                field="payment_status",
            )

        amt = to_money(amount, "refund_amount")
        total = Decimal(booking.total_amount)
        if amt <= 0:
            raise ValidationError("refund amount must be greater than zero", field="refund_amount")
        if amt != amt.quantize(CENT):
            raise ValidationError("refund amount has more than two decimal places", field="refund_amount")
        if amt > total:
            raise ValidationError(
                "refund amount cannot exceed booking total",
                field="refund_amount",
                total_amount=str(total),
            )
        refunded_after = already_refunded + amt
        if refunded_after > total:
            raise InvariantViolation(
                "refunds would exceed booking total",
                field="refund_amount",
                total_amount=str(total),
                already_refunded=str(already_refunded),
                remaining=str(total - already_refunded),
            )

        full = refunded_after >= total
        now = self.clock()
        refund = Refund(
            booking_id=booking.id,
            refund_amount=amt,
            refund_reason=reason,
            refund_method=method or self.default_method,
            processed_by=actor.id,
            processed_at=now,
        )
        note = f"Refund processed: {amt}. Reason: {reason or 'N/A'}"
        payment = self.payments.settle_refund(
            booking, PaymentStatus.REFUNDED if full else PaymentStatus.PARTIAL, actor, note
        )
        transitions: list[ReservationTransition] = []
        if full:
            transitions = self._refund_reservation(booking, actor, reason)
        return RefundOutcome(
            refund=refund,
            payment=payment,
            full=full,
            refunded_total=refunded_after,
            reservation=transitions,
        )

    def _refund_reservation(self, booking: Booking, actor: Actor, reason: Optional[str]) -> list[ReservationTransition]:
        # Walks the table instead of jumping: a live booking is cancelled
        # first, then refunded.
        out: list[ReservationTransition] = []
        status = RS(booking.status)
        if status in (RS.PENDING, RS.CONFIRMED):
            out.append(
                self.reservations.apply_system(
                    booking, RS.CANCELLED, actor, ActorRole.ADMIN, reason=reason or "refunded in full"
                )
            )
            status = RS.CANCELLED
        if status == RS.CANCELLED:
            out.append(self.reservations.apply_system(booking, RS.REFUNDED, actor, ActorRole.ADMIN))
        # completed is terminal in the transition table and that wins over the
        # refund: only the payment side of a completed stay becomes refunded.
        return out
