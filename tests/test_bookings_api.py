from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import apps.bookings.app.main as bookings  # type: ignore[import]
from apps.bookings.app import models
from apps.bookings.app.engine import BookingEngine
from apps.bookings.app.events import EventPublisher
from apps.bookings.app.repository import SqlBookingRepository

TODAY = date(2025, 5, 1)

GUEST = {"X-Actor-Id": "guest-1", "X-Actor-Role": "guest"}
OTHER = {"X-Actor-Id": "guest-2", "X-Actor-Role": "guest"}
HOST = {"X-Actor-Id": "host-1", "X-Actor-Role": "host"}
ADMIN = {"X-Actor-Id": "admin-1", "X-Actor-Role": "admin"}


@pytest.fixture()
def client(db_engine):
    def _session():
        with Session(db_engine) as s:
            yield s

    def _engine(s: Session = Depends(bookings.get_session)):
        return BookingEngine(SqlBookingRepository(s), events=EventPublisher(enabled=False), today=lambda: TODAY)

    bookings.app.dependency_overrides[bookings.get_session] = _session
    bookings.app.dependency_overrides[bookings.get_booking_engine] = _engine
    try:
        yield TestClient(bookings.app)
    finally:
        bookings.app.dependency_overrides.clear()


@pytest.fixture()
def property_id(db_engine):
    with Session(db_engine) as s:
        p = models.Property(
            host_id="host-1",
            title="Seaside flat",
            price_per_night=Decimal("100.00"),
            cleaning_fee=Decimal("50.00"),
            security_deposit=Decimal("200.00"),
            max_guests=4,
            min_nights=2,
        )
        s.add(p)
        s.commit()
        return p.id


def _book(client, property_id, headers=GUEST, ci="2025-06-01", co="2025-06-04", guests=2):
    return client.post(
        "/bookings",
        json={"property_id": property_id, "check_in_date": ci, "check_out_date": co, "guests_count": guests},
        headers=headers,
    )


def test_create_and_fetch_booking(client, property_id):
    r = _book(client, property_id)
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["status"] == "pending"
    assert body["nights"] == 3
    assert Decimal(body["base_price"]) == Decimal("600")
    assert Decimal(body["service_fee"]) == Decimal("60")
    assert Decimal(body["total_amount"]) == Decimal("710")
    assert r.headers.get("X-Request-ID")

    r = client.get(f"/bookings/{body['id']}", headers=HOST)
    assert r.status_code == 200
    detail = r.json()
    assert detail["booking"]["id"] == body["id"]
    assert detail["permissions"]["can_update_status"] is True
    assert detail["permissions"]["can_refund"] is False


def test_missing_or_bad_identity(client, property_id):
    r = _book(client, property_id, headers={})
    assert r.status_code == 403
    assert r.json()["kind"] == "forbidden"

    r = _book(client, property_id, headers={"X-Actor-Id": "u", "X-Actor-Role": "root"})
    assert r.status_code == 400
    assert r.json()["field"] == "actor_role"


def test_overlap_is_a_conflict(client, property_id):
    first = _book(client, property_id, ci="2025-06-02", co="2025-06-05").json()
    assert client.post(f"/bookings/{first['id']}/status", json={"status": "confirmed"}, headers=HOST).status_code == 200

    r = _book(client, property_id, headers=OTHER, ci="2025-06-01", co="2025-06-03")
    assert r.status_code == 409
    body = r.json()
    assert body["kind"] == "conflict"
    assert body["conflicts"][0]["id"] == first["id"]

    r = client.get(
        f"/properties/{property_id}/availability",
        params={"check_in_date": "2025-06-01", "check_out_date": "2025-06-03", "guests_count": 2},
    )
    assert r.status_code == 200
    assert r.json()["available"] is False

    r = client.get(f"/properties/{property_id}/booked-dates")
    assert r.status_code == 200
    spans = r.json()["bookings"]
    assert [(s["check_in_date"], s["check_out_date"]) for s in spans] == [("2025-06-02", "2025-06-05")]


def test_availability_and_pricing(client, property_id):
    r = client.get(
        f"/properties/{property_id}/availability",
        params={"check_in_date": "2025-06-01", "check_out_date": "2025-06-04", "guests_count": 2},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["available"] is True
    assert Decimal(body["pricing"]["total_amount"]) == Decimal("710")

    r = client.post(
        "/pricing",
        json={"property_id": property_id, "check_in_date": "2025-06-01", "check_out_date": "2025-06-04", "guests_count": 2},
    )
    assert r.status_code == 200
    assert Decimal(r.json()["security_deposit"]) == Decimal("200")

    r = client.get(
        f"/properties/{property_id}/availability",
        params={"check_in_date": "2025-06-01", "check_out_date": "2025-06-04", "guests_count": 9},
    )
    assert r.status_code == 400
    assert r.json()["field"] == "guests_count"


def test_guest_cannot_complete_stay(client, property_id):
    b = _book(client, property_id).json()
    client.post(f"/bookings/{b['id']}/status", json={"status": "confirmed"}, headers=HOST)

    r = client.post(f"/bookings/{b['id']}/status", json={"status": "completed"}, headers=GUEST)
    assert r.status_code == 403

    r = client.post(f"/bookings/{b['id']}/status", json={"status": "refunded"}, headers=ADMIN)
    assert r.status_code == 409
    assert r.json()["kind"] == "invalid_transition"


def test_payment_auto_confirms_and_is_recorded(client, property_id):
    b = _book(client, property_id).json()

    r = client.post(
        f"/bookings/{b['id']}/payment",
        json={"payment_status": "paid", "payment_method": "card", "payment_reference": "ch_1"},
        headers=HOST,
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["auto_confirmed"] is True
    assert body["booking"]["status"] == "confirmed"
    assert body["booking"]["payment_status"] == "paid"

    r = client.get(f"/bookings/{b['id']}/payment-history", headers=GUEST)
    assert r.status_code == 200
    history = r.json()
    assert len(history) == 1
    assert (history[0]["previous_status"], history[0]["new_status"]) == ("pending", "paid")

    assert client.get(f"/bookings/{b['id']}/payment-history", headers=OTHER).status_code == 403


def test_refund_flow(client, property_id):
    b = _book(client, property_id).json()
    client.post(f"/bookings/{b['id']}/payment", json={"payment_status": "paid"}, headers=HOST)

    r = client.post(f"/bookings/{b['id']}/refunds", json={"refund_amount": "800"}, headers=ADMIN)
    assert r.status_code == 400
    assert r.json()["kind"] == "validation_error"

    r = client.post(f"/bookings/{b['id']}/refunds", json={"refund_amount": "100"}, headers=HOST)
    assert r.status_code == 403

    r = client.post(f"/bookings/{b['id']}/cancel", json={"reason": "sick"}, headers=GUEST)
    assert r.status_code == 200
    assert r.json()["booking"]["cancelled_by"] == "guest"

    r = client.post(
        f"/bookings/{b['id']}/refunds",
        json={"refund_amount": 710, "refund_reason": "policy"},
        headers=ADMIN,
    )
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["full_refund"] is True
    assert body["booking"]["status"] == "refunded"
    assert body["booking"]["payment_status"] == "refunded"
    assert Decimal(body["refund"]["refund_amount"]) == Decimal("710")

    r = client.get(f"/bookings/{b['id']}/financials", headers=ADMIN)
    assert r.status_code == 200
    f = r.json()
    assert Decimal(f["refunded_total"]) == Decimal("710")
    assert Decimal(f["net_amount"]) == Decimal("0")
    assert len(f["refunds"]) == 1


def test_list_bookings_for_each_role(client, property_id):
    _book(client, property_id)
    _book(client, property_id, headers=OTHER, ci="2025-06-10", co="2025-06-12")

    assert client.get("/bookings", headers=GUEST).json()["total"] == 1
    assert client.get("/bookings", headers=HOST).json()["total"] == 2
    r = client.get("/bookings", params={"limit": 1}, headers=ADMIN)
    body = r.json()
    assert (body["total"], body["limit"], body["pages"], len(body["bookings"])) == (2, 1, 2, 1)


def test_unknown_booking_is_404(client):
    r = client.get("/bookings/does-not-exist", headers=ADMIN)
    assert r.status_code == 404
    assert r.json()["kind"] == "not_found"


def test_refund_overshoot_keeps_its_detail_in_prod(client, property_id, monkeypatch):
    b = _book(client, property_id).json()
    client.post(f"/bookings/{b['id']}/payment", json={"payment_status": "paid"}, headers=HOST)
    assert client.post(f"/bookings/{b['id']}/refunds", json={"refund_amount": "500"}, headers=ADMIN).status_code == 201

    monkeypatch.setattr(bookings, "is_prod_env", lambda: True)
    r = client.post(f"/bookings/{b['id']}/refunds", json={"refund_amount": "300"}, headers=ADMIN)

    assert r.status_code == 500
    body = r.json()
    assert body["kind"] == "invariant_violation"
    assert body["field"] == "refund_amount"
    assert body["remaining"] == "210.00"
    assert body["detail"] != "internal error"
