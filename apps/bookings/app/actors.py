from __future__ import annotations

from dataclasses import dataclass

from .errors import Forbidden, ValidationError
from .models import ActorRole, Booking


@dataclass(frozen=True)
class Actor:
    """An already-authenticated caller as resolved by the identity service."""

    id: str
    role: ActorRole

    @classmethod
    def parse(cls, actor_id: str | None, role: str | None) -> "Actor":
        aid = (actor_id or "").strip()
        if not aid:
            raise Forbidden("authentication required", field="actor_id")
        try:
            r = ActorRole((role or "").strip().lower())
        except ValueError:
            raise ValidationError(f"unknown actor role: {role!r}", field="actor_role") from None
        return cls(id=aid, role=r)

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


def relations(actor: Actor, booking: Booking) -> frozenset[ActorRole]:
    """
    Capacities in which ``actor`` may act on ``booking``.

    Role alone is not enough for hosts and guests: a host acts as ``host``
    only on bookings of their own properties, and anybody (hosts included)
    acts as ``guest`` only on bookings they made.
    """
    out = set()
    if actor.is_admin:
        out.add(ActorRole.ADMIN)
    if actor.id == booking.host_id:
        out.add(ActorRole.HOST)
    if actor.id == booking.guest_id:
        out.add(ActorRole.GUEST)
    return frozenset(out)


def acting_role(actor: Actor, booking: Booking) -> ActorRole:
    """Strongest capacity, used when stamping who cancelled a booking."""
    rel = relations(actor, booking)
    for role in (ActorRole.ADMIN, ActorRole.HOST, ActorRole.GUEST):
        if role in rel:
            return role
    raise Forbidden("you are not a party to this booking", booking_id=booking.id)


def require_party(actor: Actor, booking: Booking, action: str = "view this booking") -> frozenset[ActorRole]:
    rel = relations(actor, booking)
    if not rel:
        raise Forbidden(f"you do not have permission to {action}", booking_id=booking.id)
    return rel
