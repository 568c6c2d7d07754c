"""
Booking lifecycle engine.

Composes the overlap checker, pricing, both state machines and the refund
processor behind one set of operations, and owns the transaction and lock
around each of them. The HTTP layer in ``main`` only maps requests onto
these methods.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterator, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from .actors import Actor, relations, require_party
from .config import EngineSettings
from .errors import (
    ConcurrentModification,
    Conflict,
    Forbidden,
    NotAvailable,
    NotFound,
    ValidationError,
)
from .events import EventPublisher, emit_event
from .models import (
    PROPERTY_ACTIVE,
    ActorRole,
    Booking,
    PaymentHistory,
    PaymentStatus,
    Property,
    Refund,
    ReservationStatus,
    utcnow,
)
from .overlap import OverlapChecker
from .payment_state import REFUNDABLE, PaymentChange, PaymentStateMachine
from .pricing import ZERO, PriceBreakdown, compute_price, nights_between, round2
from .refunds import RefundOutcome, RefundProcessor
from .repository import BookingFilters, BookingRepository
from .reservation_state import RESERVATION_EDGES, ReservationStateMachine

log = logging.getLogger("staybook.bookings")
_audit_logger = logging.getLogger("staybook.audit")


def _audit(action: str, **extra: object) -> None:
    """Structured audit line for every accepted mutation; never raises."""
    try:
        payload: dict[str, object] = {
            "event": "audit",
            "domain": "bookings",
            "action": action,
            "ts_ms": int(time.time() * 1000),
        }
        for k, v in extra.items():
            if v is not None:
                payload[k] = str(v) if isinstance(v, (Decimal, date)) else v
        _audit_logger.info(payload)
    except Exception:
        log.debug("audit write failed for %s", action, exc_info=True)


def _span(b: Booking) -> dict[str, str]:
    return {
        "id": b.id,
        "check_in_date": b.check_in_date.isoformat(),
        "check_out_date": b.check_out_date.isoformat(),
        "status": ReservationStatus(b.status).value,
    }


@dataclass(frozen=True)
class Availability:
    available: bool
    nights: int
    pricing: Optional[PriceBreakdown]
    conflicts: list[Booking] = field(default_factory=list)


@dataclass(frozen=True)
class Permissions:
    can_cancel: bool
    can_update_status: bool
    can_update_payment: bool
    can_refund: bool

    def as_dict(self) -> dict[str, bool]:
        return {
            "can_cancel": self.can_cancel,
            "can_update_status": self.can_update_status,
            "can_update_payment": self.can_update_payment,
            "can_refund": self.can_refund,
        }


@dataclass(frozen=True)
class BookingPage:
    items: list[Booking]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.total else 0


@dataclass(frozen=True)
class Financials:
    booking: Booking
    refunded_total: Decimal
    net_amount: Decimal
    remaining_refundable: Decimal
    refunds: list[Refund]


@dataclass(frozen=True)
class BookedSpan:
    id: str
    check_in_date: date
    check_out_date: date
    status: ReservationStatus


@dataclass(frozen=True)
class BookedCalendar:
    property_id: int
    start_date: date
    end_date: date
    bookings: list[BookedSpan]


def _parse_reservation_status(value: Union[str, ReservationStatus]) -> ReservationStatus:
    try:
        return ReservationStatus(value)
    except ValueError:
        raise ValidationError(f"invalid booking status: {value!r}", field="status") from None


class BookingEngine:
    def __init__(
        self,
        repo: BookingRepository,
        *,
        settings: Optional[EngineSettings] = None,
        events: Optional[EventPublisher] = None,
        today: Optional[Callable[[], date]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repo = repo
        self.settings = settings or EngineSettings()
        self.events = events
        self.today = today or date.today
        self.clock = clock or utcnow
        self.overlaps = OverlapChecker(repo, include_completed=self.settings.block_completed)
        self.reservations = ReservationStateMachine(clock=self.clock)
        self.payments = PaymentStateMachine(self.reservations, clock=self.clock)
        self.refunds = RefundProcessor(
            self.payments,
            self.reservations,
            default_method=self.settings.default_refund_method,
            clock=self.clock,
        )

    # -- plumbing -----------------------------------------------------------

    @contextmanager
    def _unit(self) -> Iterator[None]:
        try:
            yield
        except Exception:
            self.repo.rollback()
            raise

    def _commit(self) -> None:
        try:
            self.repo.commit()
        except StaleDataError:
            self.repo.rollback()
            raise ConcurrentModification("booking was modified concurrently; reload and retry") from None
        except IntegrityError:
            # Raised by the exclusion constraint on databases that carry it.
            self.repo.rollback()
            raise Conflict("property is not available for the selected dates") from None

    def _load(self, booking_id: str, *, for_update: bool = False) -> Booking:
        b = self.repo.get_booking(booking_id, for_update=for_update)
        if b is None:
            raise NotFound("booking not found", booking_id=booking_id)
        return b

    def _property(self, property_id: int) -> Property:
        p = self.repo.get_property(property_id)
        if p is None:
            raise NotFound("property not found", property_id=property_id)
        return p

    def _validate_stay(
        self,
        property_id: int,
        check_in: date,
        check_out: date,
        guest_count: int,
        *,
        calendar: bool = True,
    ) -> tuple[Property, int]:
        if check_in >= check_out:
            raise ValidationError("check-out date must be after check-in date", field="check_out_date")
        prop = self._property(property_id)
        if prop.status != PROPERTY_ACTIVE:
            raise NotAvailable("property is not available for booking", property_id=property_id)
        if guest_count < 1:
            raise ValidationError("at least one guest is required", field="guests_count")
        if guest_count > prop.max_guests:
            raise ValidationError(
                f"property can accommodate maximum {prop.max_guests} guests", field="guests_count"
            )
        nights = nights_between(check_in, check_out)
        if nights < (prop.min_nights or 1):
            raise ValidationError(f"minimum stay is {prop.min_nights} nights", field="check_out_date")
        if prop.max_nights and nights > prop.max_nights:
            raise ValidationError(f"maximum stay is {prop.max_nights} nights", field="check_out_date")
        if calendar:
            today = self.today()
            if check_in < today:
                raise ValidationError("check-in date cannot be in the past", field="check_in_date")
            if prop.advance_booking_days and check_in > today + timedelta(days=prop.advance_booking_days):
                raise ValidationError(
                    f"cannot book more than {prop.advance_booking_days} days in advance",
                    field="check_in_date",
                )
        return prop, nights

    def _price(self, prop: Property, nights: int, guest_count: int) -> PriceBreakdown:
        return compute_price(
            prop.price_per_night,
            nights,
            guest_count,
            cleaning_fee=prop.cleaning_fee or ZERO,
            deposit=prop.security_deposit or ZERO,
            service_fee_rate=self.settings.service_fee_rate,
        )

    # -- availability & pricing -----------------------------------------------

    def check_availability(
        self, property_id: int, check_in: date, check_out: date, guest_count: int = 1
    ) -> Availability:
        prop, nights = self._validate_stay(property_id, check_in, check_out, guest_count)
        conflicts = self.overlaps.find_conflicts(property_id, check_in, check_out)
        if conflicts:
            log.warning(
                "availability conflict",
                extra={
                    "property_id": property_id,
                    "requested": [check_in.isoformat(), check_out.isoformat()],
                    "conflicts": [_span(b) for b in conflicts],
                },
            )
            return Availability(available=False, nights=nights, pricing=None, conflicts=conflicts)
        return Availability(available=True, nights=nights, pricing=self._price(prop, nights, guest_count))

    def calculate_pricing(
        self, property_id: int, check_in: date, check_out: date, guest_count: int = 1
    ) -> PriceBreakdown:
        # Quotes ignore the booking calendar; only the stay rules apply.
        prop, nights = self._validate_stay(property_id, check_in, check_out, guest_count, calendar=False)
        return self._price(prop, nights, guest_count)

    def booked_dates(
        self, property_id: int, start: Optional[date] = None, end: Optional[date] = None
    ) -> BookedCalendar:
        start = start or self.today()
        end = end or start + timedelta(days=self.settings.booked_dates_window_days)
        if start >= end:
            raise ValidationError("invalid date range", field="end_date")
        self._property(property_id)
        spans = [
            BookedSpan(b.id, b.check_in_date, b.check_out_date, ReservationStatus(b.status))
            for b in self.overlaps.find_conflicts(property_id, start, end)
        ]
        return BookedCalendar(property_id, start, end, spans)

    # -- bookings -------------------------------------------------------------

    def create_booking(
        self,
        property_id: int,
        actor: Actor,
        check_in: date,
        check_out: date,
        guest_count: int,
        special_requests: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> Booking:
        if actor.role != ActorRole.GUEST:
            raise Forbidden("only guests can create bookings", actor_role=actor.role.value)
        prop, nights = self._validate_stay(property_id, check_in, check_out, guest_count)
        if payment_method is not None and len(payment_method) > 50:
            raise ValidationError("payment method longer than 50 characters", field="payment_method")

        with self.repo.property_lock(property_id), self._unit():
            conflicts = self.overlaps.find_conflicts(property_id, check_in, check_out)
            if conflicts:
                spans = [_span(b) for b in conflicts]
                log.warning(
                    "booking conflict",
                    extra={
                        "property_id": property_id,
                        "requested": [check_in.isoformat(), check_out.isoformat()],
                        "conflicts": spans,
                    },
                )
                raise Conflict(
                    "property is not available for the selected dates",
                    field="check_in_date",
                    conflicts=spans,
                )
            price = self._price(prop, nights, guest_count)
            now = self.clock()
            booking = Booking(
                id=str(uuid.uuid4()),
                property_id=prop.id,
                guest_id=actor.id,
                host_id=prop.host_id,
                check_in_date=check_in,
                check_out_date=check_out,
                guests_count=guest_count,
                base_price=price.base_price,
                cleaning_fee=price.cleaning_fee,
                security_deposit=price.security_deposit,
                service_fee=price.service_fee,
                total_amount=price.total_amount,
                status=ReservationStatus.CONFIRMED if prop.is_instant_book else ReservationStatus.PENDING,
                payment_status=PaymentStatus.PENDING,
                payment_method=payment_method,
                special_requests=special_requests,
                created_at=now,
                updated_at=now,
            )
            self.repo.add(booking)
            self._commit()

        _audit(
            "booking_created",
            booking_id=booking.id,
            property_id=property_id,
            guest_id=actor.id,
            status=booking.status.value,
            total_amount=price.total_amount,
        )
        emit_event(
            "booking.created",
            {
                "booking_id": booking.id,
                "property_id": property_id,
                "guest_id": booking.guest_id,
                "host_id": booking.host_id,
                "check_in_date": check_in.isoformat(),
                "check_out_date": check_out.isoformat(),
                "status": booking.status.value,
            },
            publisher=self.events,
        )
        return booking

    def get_booking(self, booking_id: str, actor: Actor) -> Booking:
        b = self._load(booking_id)
        require_party(actor, b)
        return b

    def list_bookings(
        self,
        actor: Actor,
        *,
        status: Optional[Union[str, ReservationStatus]] = None,
        property_id: Optional[int] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        guest_id: Optional[str] = None,
        host_id: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> BookingPage:
        page = max(1, page)
        limit = max(1, min(limit, self.settings.max_page_size))
        st = _parse_reservation_status(status) if status else None
        scope: dict[str, Optional[str]]
        if actor.role == ActorRole.ADMIN:
            scope = {"guest_id": guest_id, "host_id": host_id}
        elif actor.role == ActorRole.HOST:
            # an account that used to book as a guest still sees those trips
            scope = {"party_id": actor.id}
        else:
            scope = {"guest_id": actor.id}
        filters = BookingFilters(
            status=st,
            property_id=property_id,
            start_date=start_date,
            end_date=end_date,
            **scope,
        )
        items, total = self.repo.list_bookings(filters, offset=(page - 1) * limit, limit=limit)
        return BookingPage(items=items, total=total, page=page, limit=limit)

    def transition_status(
        self,
        booking_id: str,
        new_status: Union[str, ReservationStatus],
        actor: Actor,
        notes: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Booking:
        target = _parse_reservation_status(new_status)
        with self.repo.booking_lock(booking_id), self._unit():
            b = self._load(booking_id, for_update=True)
            t = self.reservations.transition(b, target, actor, reason=reason, notes=notes)
            self._commit()
        _audit(
            "booking_status_changed",
            booking_id=booking_id,
            actor_id=actor.id,
            acting_as=t.acting_as.value,
            previous=t.previous.value,
            status=t.current.value,
        )
        return b

    def cancel_booking(self, booking_id: str, actor: Actor, reason: Optional[str] = None) -> Booking:
        return self.transition_status(booking_id, ReservationStatus.CANCELLED, actor, reason=reason)

    def update_payment(
        self,
        booking_id: str,
        actor: Actor,
        new_status: Optional[Union[str, PaymentStatus]] = None,
        method: Optional[str] = None,
        reference: Optional[str] = None,
        note: Optional[str] = None,
    ) -> PaymentChange:
        with self.repo.booking_lock(booking_id), self._unit():
            b = self._load(booking_id, for_update=True)
            change = self.payments.update(
                b, actor, new_status=new_status, method=method, reference=reference, note=note
            )
            self.repo.add(change.history)
            self._commit()
        _audit(
            "booking_payment_updated",
            booking_id=booking_id,
            actor_id=actor.id,
            previous=change.previous.value,
            payment_status=change.current.value,
            auto_confirmed=change.auto_confirmed or None,
        )
        return change

    def process_refund(
        self,
        booking_id: str,
        amount,
        actor: Actor,
        reason: Optional[str] = None,
        method: Optional[str] = None,
    ) -> RefundOutcome:
        with self.repo.booking_lock(booking_id), self._unit():
            b = self._load(booking_id, for_update=True)
            outcome = self.refunds.process(
                b,
                amount,
                actor,
                reason=reason,
                method=method,
                already_refunded=self.repo.refunded_total(booking_id),
            )
            self.repo.add(outcome.refund, outcome.payment.history)
            self._commit()
        _audit(
            "booking_refunded",
            booking_id=booking_id,
            actor_id=actor.id,
            amount=outcome.refund.refund_amount,
            refunded_total=outcome.refunded_total,
            full=outcome.full,
        )
        return outcome

    def payment_history(self, booking_id: str, actor: Actor) -> list[PaymentHistory]:
        self.get_booking(booking_id, actor)
        return self.repo.history_for(booking_id)

    def booking_financials(self, booking_id: str, actor: Actor) -> Financials:
        b = self.get_booking(booking_id, actor)
        refunded = self.repo.refunded_total(booking_id)
        total = Decimal(b.total_amount)
        refundable = PaymentStatus(b.payment_status) in REFUNDABLE
        return Financials(
            booking=b,
            refunded_total=refunded,
            net_amount=round2(total - refunded),
            remaining_refundable=round2(total - refunded) if refundable else ZERO,
            refunds=self.repo.refunds_for(booking_id),
        )

    def permissions_for(self, booking: Booking, actor: Actor) -> Permissions:
        rel = relations(actor, booking)
        current = ReservationStatus(booking.status)
        # refunded is reached only through the refund processor
        edges = [
            allowed
            for (src, tgt), allowed in RESERVATION_EDGES.items()
            if src == current and tgt != ReservationStatus.REFUNDED
        ]
        cancel = RESERVATION_EDGES.get((current, ReservationStatus.CANCELLED))
        payment = PaymentStatus(booking.payment_status)
        return Permissions(
            can_cancel=bool(cancel and rel & cancel),
            can_update_status=any(rel & allowed for allowed in edges),
            can_update_payment=bool(rel) and (payment != PaymentStatus.REFUNDED or actor.is_admin),
            can_refund=actor.is_admin and payment in REFUNDABLE,
        )
