"""
Reservation status lifecycle.

    pending ──► confirmed ──► completed
       │            │
       └──► cancelled ◄┘──► refunded

Each edge names the capacities allowed to take it. ``cancelled -> refunded``
is reserved for the refund processor; asking for it directly is rejected.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .actors import Actor, acting_role, require_party
from .errors import Forbidden, InvalidTransition
from .models import ActorRole, Booking, ReservationStatus, utcnow

RS = ReservationStatus
_ANY_PARTY = frozenset({ActorRole.GUEST, ActorRole.HOST, ActorRole.ADMIN})
_HOST_OR_ADMIN = frozenset({ActorRole.HOST, ActorRole.ADMIN})
_ADMIN = frozenset({ActorRole.ADMIN})

# (source, target) -> who may take the edge
RESERVATION_EDGES: dict[tuple[ReservationStatus, ReservationStatus], frozenset[ActorRole]] = {
    (RS.PENDING, RS.CONFIRMED): _HOST_OR_ADMIN,
    (RS.PENDING, RS.CANCELLED): _ANY_PARTY,
    (RS.CONFIRMED, RS.COMPLETED): _HOST_OR_ADMIN,
    (RS.CONFIRMED, RS.CANCELLED): _ANY_PARTY,
    (RS.CANCELLED, RS.REFUNDED): _ADMIN,
}


def require_rows(table: dict, states: type, what: str) -> None:
    """Fail at import if ``table`` lacks a row for any member of ``states``."""
    missing = [s.value for s in states if s not in table]
    if missing:
        raise RuntimeError(f"every {what} status needs a transition row, missing: {missing}")


RESERVATION_TRANSITIONS: dict[ReservationStatus, frozenset[ReservationStatus]] = {
    s: frozenset(t for (src, t) in RESERVATION_EDGES if src == s) for s in RS
}

TERMINAL_STATUSES = frozenset(s for s, targets in RESERVATION_TRANSITIONS.items() if not targets)

require_rows(RESERVATION_TRANSITIONS, RS, "reservation")
if TERMINAL_STATUSES != {RS.COMPLETED, RS.REFUNDED}:
    raise RuntimeError(f"unexpected terminal statuses: {sorted(s.value for s in TERMINAL_STATUSES)}")


def can_transition(current: ReservationStatus, target: ReservationStatus) -> bool:
    return target in RESERVATION_TRANSITIONS[current]


@dataclass(frozen=True)
class ReservationTransition:
    booking_id: str
    previous: ReservationStatus
    current: ReservationStatus
    actor_id: str
    acting_as: ActorRole


class ReservationStateMachine:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def transition(
        self,
        booking: Booking,
        target: ReservationStatus,
        actor: Actor,
        *,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ReservationTransition:
        """
        Move ``booking`` to ``target`` on behalf of ``actor``.

        Checks, in order: the actor is a party to the booking, the edge
        exists, the actor holds a capacity the edge allows.
        """
        rel = require_party(actor, booking, "change this booking")
        current = RS(booking.status)
        target = RS(target)
        if not can_transition(current, target):
            raise InvalidTransition(current.value, target.value)
        allowed = RESERVATION_EDGES[(current, target)]
        if not (rel & allowed):
            who = " or ".join(sorted(r.value for r in allowed))
            raise Forbidden(
                f"only the {who} may change a {current.value} booking to {target.value}",
                booking_id=booking.id,
            )
        if target == RS.REFUNDED:
            raise InvalidTransition(
                current.value,
                target.value,
                "bookings become refunded by processing a full refund",
            )
        acting_as = acting_role(actor, booking)
        if notes is not None and acting_as == ActorRole.GUEST:
            raise Forbidden("only the host or admin may write host notes", field="host_notes")
        return self._apply(booking, target, actor, acting_as, reason=reason, notes=notes)

    def apply_system(
        self,
        booking: Booking,
        target: ReservationStatus,
        actor: Actor,
        acting_as: ActorRole,
        *,
        reason: Optional[str] = None,
    ) -> ReservationTransition:
        """
        Edge taken as a side effect of another operation (payment
        auto-confirmation, full refund). Authority was checked by that
        operation; the edge itself must still be in the table.
        """
        current = RS(booking.status)
        if not can_transition(current, target):
            raise InvalidTransition(current.value, RS(target).value)
        return self._apply(booking, RS(target), actor, acting_as, reason=reason)

    def _apply(
        self,
        booking: Booking,
        target: ReservationStatus,
        actor: Actor,
        acting_as: ActorRole,
        *,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ReservationTransition:
        previous = RS(booking.status)
        now = self.clock()
        booking.status = target
        booking.updated_at = now
        if notes is not None:
            booking.host_notes = notes
        if target == RS.CANCELLED:
            booking.cancelled_at = now
            booking.cancelled_by = acting_as
            booking.cancellation_reason = reason
        elif target == RS.REFUNDED:
            booking.cancelled_at = None
            booking.cancelled_by = None
            booking.cancellation_reason = None
        return ReservationTransition(
            booking_id=booking.id,
            previous=previous,
            current=target,
            actor_id=actor.id,
            acting_as=acting_as,
        )
