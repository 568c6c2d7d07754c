from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Hashable, Iterator, Optional, Protocol, Sequence

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from .models import Booking, PaymentHistory, Property, Refund, ReservationStatus


class _KeyedLocks:
    """
    Process-wide mutexes keyed by id.

    Serialises check-then-write sequences on one property (or one booking)
    between threads of this process; the database row lock or exclusion
    constraint covers other processes.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, list] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)


_PROPERTY_LOCKS = _KeyedLocks()
_BOOKING_LOCKS = _KeyedLocks()


@dataclass(frozen=True)
class BookingFilters:
    guest_id: Optional[str] = None
    host_id: Optional[str] = None
    party_id: Optional[str] = None  # host OR guest of the booking
    status: Optional[ReservationStatus] = None
    property_id: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class BookingRepository(Protocol):
    def get_property(self, property_id: int) -> Optional[Property]: ...

    def get_booking(self, booking_id: str, *, for_update: bool = False) -> Optional[Booking]: ...

    def find_overlapping(
        self,
        property_id: int,
        check_in: date,
        check_out: date,
        statuses: Sequence[ReservationStatus],
        exclude_booking_id: Optional[str] = None,
    ) -> Sequence[Booking]: ...

    def list_bookings(self, filters: BookingFilters, offset: int, limit: int) -> tuple[list[Booking], int]: ...

    def refunds_for(self, booking_id: str) -> list[Refund]: ...

    def refunded_total(self, booking_id: str) -> Decimal: ...

    def history_for(self, booking_id: str) -> list[PaymentHistory]: ...

    def add(self, *objs: object) -> None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def property_lock(self, property_id: int): ...

    def booking_lock(self, booking_id: str): ...


class SqlBookingRepository:
    """``BookingRepository`` over a SQLAlchemy session owned by the caller."""

    def __init__(self, session: Session):
        self.s = session

    def _row_locks(self) -> bool:
        # SQLite has no SELECT ... FOR UPDATE; writers are serialised by the
        # database file lock and by the process-wide locks above.
        return self.s.get_bind().dialect.name != "sqlite"

    @contextmanager
    def property_lock(self, property_id: int) -> Iterator[None]:
        with _PROPERTY_LOCKS.hold(property_id):
            if self._row_locks():
                self.s.execute(select(Property.id).where(Property.id == property_id).with_for_update())
            yield

    @contextmanager
    def booking_lock(self, booking_id: str) -> Iterator[None]:
        with _BOOKING_LOCKS.hold(booking_id):
            yield

    def get_property(self, property_id: int) -> Optional[Property]:
        return self.s.get(Property, property_id)

    def get_booking(self, booking_id: str, *, for_update: bool = False) -> Optional[Booking]:
        q = select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
        if for_update and self._row_locks():
            q = q.with_for_update()
        return self.s.execute(q).scalars().first()

    def find_overlapping(
        self,
        property_id: int,
        check_in: date,
        check_out: date,
        statuses: Sequence[ReservationStatus],
        exclude_booking_id: Optional[str] = None,
    ) -> Sequence[Booking]:
        q = select(Booking).where(
            Booking.property_id == property_id,
            Booking.status.in_(list(statuses)),
            Booking.check_in_date < check_out,
            Booking.check_out_date > check_in,
        )
        if exclude_booking_id:
            q = q.where(Booking.id != exclude_booking_id)
        return self.s.execute(q.order_by(Booking.check_in_date.asc())).scalars().all()

    def list_bookings(self, filters: BookingFilters, offset: int, limit: int) -> tuple[list[Booking], int]:
        conds = []
        if filters.party_id:
            conds.append(or_(Booking.host_id == filters.party_id, Booking.guest_id == filters.party_id))
        if filters.guest_id:
            conds.append(Booking.guest_id == filters.guest_id)
        if filters.host_id:
            conds.append(Booking.host_id == filters.host_id)
        if filters.status:
            conds.append(Booking.status == filters.status)
        if filters.property_id is not None:
            conds.append(Booking.property_id == filters.property_id)
        if filters.start_date:
            conds.append(Booking.check_in_date >= filters.start_date)
        if filters.end_date:
            conds.append(Booking.check_out_date <= filters.end_date)
        where = and_(*conds) if conds else None

        base = select(Booking)
        count_q = select(func.count()).select_from(Booking)
        if where is not None:
            base = base.where(where)
            count_q = count_q.where(where)
        total = self.s.execute(count_q).scalar() or 0
        rows = self.s.execute(
            base.order_by(Booking.created_at.desc(), Booking.id.desc()).limit(limit).offset(offset)
        ).scalars().all()
        return list(rows), int(total)

    def refunds_for(self, booking_id: str) -> list[Refund]:
        q = (
            select(Refund)
            .where(Refund.booking_id == booking_id)
            .order_by(Refund.processed_at.desc(), Refund.id.desc())
        )
        return list(self.s.execute(q).scalars().all())

    def refunded_total(self, booking_id: str) -> Decimal:
        total = self.s.execute(
            select(func.coalesce(func.sum(Refund.refund_amount), 0)).where(Refund.booking_id == booking_id)
        ).scalar()
        return Decimal(str(total or 0)).quantize(Decimal("0.01"))

    def history_for(self, booking_id: str) -> list[PaymentHistory]:
        q = (
            select(PaymentHistory)
            .where(PaymentHistory.booking_id == booking_id)
            .order_by(PaymentHistory.created_at.desc(), PaymentHistory.id.desc())
        )
        return list(self.s.execute(q).scalars().all())

    def add(self, *objs: object) -> None:
        self.s.add_all(objs)

    def commit(self) -> None:
        self.s.commit()

    def rollback(self) -> None:
        self.s.rollback()
