import os
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

os.environ.setdefault("ENV", "test")
os.environ.setdefault("EVENTS_ENABLED", "false")

from apps.bookings.app import models  # noqa: E402
from apps.bookings.app.actors import Actor  # noqa: E402
from apps.bookings.app.engine import BookingEngine  # noqa: E402
from apps.bookings.app.events import EventPublisher  # noqa: E402
from apps.bookings.app.models import ActorRole  # noqa: E402
from apps.bookings.app.repository import SqlBookingRepository  # noqa: E402

TODAY = date(2025, 5, 1)
HOST_ID = "host-1"
GUEST_ID = "guest-1"
OTHER_GUEST_ID = "guest-2"
ADMIN_ID = "admin-1"


class TickingClock:
    """Deterministic ``now``: each call is one second after the previous one."""

    def __init__(self, start: datetime):
        self._now = start

    def __call__(self) -> datetime:
        self._now = self._now + timedelta(seconds=1)
        return self._now


class RecordingPublisher(EventPublisher):
    def __init__(self) -> None:
        super().__init__(enabled=False)
        self.published: List[Tuple[str, str, Dict[str, Any]]] = []

    def publish(self, domain: str, event_type: str, payload: Dict[str, Any]) -> None:
        self.published.append((domain, event_type, payload))


@pytest.fixture()
def db_engine():
    """
    Isolated in-memory SQLite engine built from the ORM models; StaticPool
    keeps one connection so every session (and thread) sees the same DB.
    """
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    models.Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def session(db_engine):
    with Session(db_engine) as s:
        yield s


@pytest.fixture()
def clock():
    return TickingClock(datetime(2025, 5, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture()
def publisher():
    return RecordingPublisher()


@pytest.fixture()
def booking_engine(session, clock, publisher):
    return BookingEngine(
        SqlBookingRepository(session),
        events=publisher,
        today=lambda: TODAY,
        clock=clock,
    )


@pytest.fixture()
def make_property(session):
    def _make(**overrides) -> models.Property:
        fields: Dict[str, Any] = dict(
            host_id=HOST_ID,
            title="Seaside flat",
            status=models.PROPERTY_ACTIVE,
            price_per_night=Decimal("100.00"),
            cleaning_fee=Decimal("50.00"),
            security_deposit=Decimal("200.00"),
            max_guests=4,
            min_nights=2,
            max_nights=0,
            advance_booking_days=0,
            is_instant_book=0,
        )
        fields.update(overrides)
        p = models.Property(**fields)
        session.add(p)
        session.commit()
        session.refresh(p)
        return p

    return _make


@pytest.fixture()
def host():
    return Actor(HOST_ID, ActorRole.HOST)


@pytest.fixture()
def guest():
    return Actor(GUEST_ID, ActorRole.GUEST)


@pytest.fixture()
def other_guest():
    return Actor(OTHER_GUEST_ID, ActorRole.GUEST)


@pytest.fixture()
def admin():
    return Actor(ADMIN_ID, ActorRole.ADMIN)


@pytest.fixture()
def paid_booking(booking_engine, make_property, guest, host):
    """Confirmed, fully paid $710 booking (3 nights, 2 guests)."""
    p = make_property()
    b = booking_engine.create_booking(p.id, guest, date(2025, 6, 1), date(2025, 6, 4), 2)
    booking_engine.update_payment(b.id, host, new_status="paid", method="card", reference="ch_1")
    return b
