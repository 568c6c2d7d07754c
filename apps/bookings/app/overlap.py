from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING, Optional, Sequence

from .models import Booking, ReservationStatus

if TYPE_CHECKING:
    from .repository import BookingRepository


BLOCKING_STATUSES: tuple[ReservationStatus, ...] = (
    ReservationStatus.PENDING,
    ReservationStatus.CONFIRMED,
)


def ranges_overlap(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    # half-open [start, end): a checkout on the other stay's check-in day is fine
    return not (a_end <= b_start or a_start >= b_end)


def blocking_statuses(include_completed: bool) -> tuple[ReservationStatus, ...]:
    if include_completed:
        return BLOCKING_STATUSES + (ReservationStatus.COMPLETED,)
    return BLOCKING_STATUSES


class OverlapChecker:
    """Finds blocking bookings of a property that intersect a date range."""

    def __init__(self, repo: "BookingRepository", include_completed: bool = True):
        self.repo = repo
        self.statuses = blocking_statuses(include_completed)

    def find_conflicts(
        self,
        property_id: int,
        check_in: date,
        check_out: date,
        exclude_booking_id: Optional[str] = None,
    ) -> list[Booking]:
        rows: Sequence[Booking] = self.repo.find_overlapping(
            property_id, check_in, check_out, self.statuses, exclude_booking_id
        )
        return [
            b for b in rows
            if ranges_overlap(check_in, check_out, b.check_in_date, b.check_out_date)
        ]

    def has_conflict(
        self,
        property_id: int,
        check_in: date,
        check_out: date,
        exclude_booking_id: Optional[str] = None,
    ) -> bool:
        return bool(self.find_conflicts(property_id, check_in, check_out, exclude_booking_id))
