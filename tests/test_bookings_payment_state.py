from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from apps.bookings.app.actors import Actor
from apps.bookings.app.errors import Forbidden, InvalidTransition, ValidationError
from apps.bookings.app.models import (
    ActorRole,
    Booking,
    PaymentStatus as PS,
    ReservationStatus as RS,
)
from apps.bookings.app.payment_state import PAYMENT_TRANSITIONS, PaymentStateMachine, can_transition
from apps.bookings.app.reservation_state import ReservationStateMachine, require_rows

NOW = datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)
HOST = Actor("h", ActorRole.HOST)
GUEST = Actor("g", ActorRole.GUEST)
ADMIN = Actor("a", ActorRole.ADMIN)


def _booking(payment: PS, status: RS = RS.CONFIRMED) -> Booking:
    return Booking(
        id="b-1",
        property_id=1,
        guest_id="g",
        host_id="h",
        check_in_date=date(2025, 6, 1),
        check_out_date=date(2025, 6, 4),
        guests_count=2,
        base_price=Decimal("600.00"),
        total_amount=Decimal("710.00"),
        status=status,
        payment_status=payment,
    )


@pytest.fixture()
def machine():
    return PaymentStateMachine(ReservationStateMachine(clock=lambda: NOW), clock=lambda: NOW)


def test_table_covers_every_status():
    assert set(PAYMENT_TRANSITIONS) == set(PS)
    assert PAYMENT_TRANSITIONS[PS.REFUNDED] == frozenset()


def test_missing_table_row_fails_loudly():
    table = {s: t for s, t in PAYMENT_TRANSITIONS.items() if s != PS.FAILED}
    with pytest.raises(RuntimeError, match="failed"):
        require_rows(table, PS, "payment")


def test_closure_only_table_edges_are_accepted(machine):
    for src in PS:
        for tgt in PS:
            if src == tgt:
                continue
            b = _booking(src)
            if can_transition(src, tgt) and tgt != PS.REFUNDED:
                change = machine.update(b, ADMIN, new_status=tgt)
                assert (change.previous, change.current) == (src, tgt)
                assert b.payment_status == tgt
            else:
                with pytest.raises(InvalidTransition):
                    machine.update(b, ADMIN, new_status=tgt)
                assert b.payment_status == src


def test_paid_on_pending_reservation_confirms_it(machine):
    b = _booking(PS.PENDING, RS.PENDING)

    change = machine.update(b, HOST, new_status="paid", method="card")

    assert change.auto_confirmed
    assert b.status == RS.CONFIRMED
    assert b.payment_status == PS.PAID
    assert change.history.previous_status == PS.PENDING
    assert change.history.new_status == PS.PAID
    assert change.history.updated_by == "h"


def test_paid_on_confirmed_reservation_leaves_status(machine):
    b = _booking(PS.PENDING, RS.CONFIRMED)
    change = machine.update(b, GUEST, new_status=PS.PAID)
    assert not change.auto_confirmed
    assert b.status == RS.CONFIRMED


def test_refunded_only_through_refund_processing(machine):
    b = _booking(PS.PAID)

    with pytest.raises(InvalidTransition) as excinfo:
        machine.update(b, ADMIN, new_status="refunded")
    assert excinfo.value.field == "payment_status"


def test_empty_update_is_rejected(machine):
    with pytest.raises(ValidationError):
        machine.update(_booking(PS.PENDING), HOST)


def test_unknown_status_is_rejected(machine):
    with pytest.raises(ValidationError):
        machine.update(_booking(PS.PENDING), HOST, new_status="settled")


def test_overlong_metadata_is_rejected(machine):
    with pytest.raises(ValidationError):
        machine.update(_booking(PS.PENDING), HOST, method="x" * 51)
    with pytest.raises(ValidationError):
        machine.update(_booking(PS.PENDING), HOST, reference="x" * 101)


def test_metadata_only_update_keeps_status_and_records_history(machine):
    b = _booking(PS.PAID)

    change = machine.update(b, HOST, reference="ch_42", note="reconciled")

    assert not change.status_changed
    assert b.payment_reference == "ch_42"
    assert change.history.previous_status == change.history.new_status == PS.PAID
    assert change.history.notes == "reconciled"


def test_refunded_payment_is_locked_except_for_admin(machine):
    with pytest.raises(Forbidden):
        machine.update(_booking(PS.REFUNDED), GUEST, method="cash")
    with pytest.raises(Forbidden):
        machine.update(_booking(PS.REFUNDED), HOST, reference="r")

    b = _booking(PS.REFUNDED)
    machine.update(b, ADMIN, reference="refund-batch-7")
    assert b.payment_reference == "refund-batch-7"
    assert b.payment_status == PS.REFUNDED


def test_outsider_cannot_update_payment(machine):
    with pytest.raises(Forbidden):
        machine.update(_booking(PS.PENDING), Actor("x", ActorRole.HOST), new_status="paid")


def test_host_marks_pending_booking_paid_end_to_end(booking_engine, make_property, guest, host):
    p = make_property()
    b = booking_engine.create_booking(p.id, guest, date(2025, 6, 1), date(2025, 6, 4), 2)

    change = booking_engine.update_payment(b.id, host, new_status="paid")

    reloaded = booking_engine.get_booking(b.id, guest)
    assert change.auto_confirmed
    assert reloaded.payment_status == PS.PAID
    assert reloaded.status == RS.CONFIRMED
    history = booking_engine.payment_history(b.id, guest)
    assert len(history) == 1
    assert (history[0].previous_status, history[0].new_status) == (PS.PENDING, PS.PAID)


def test_failed_update_leaves_no_history(booking_engine, make_property, guest, host):
    p = make_property()
    b = booking_engine.create_booking(p.id, guest, date(2025, 6, 1), date(2025, 6, 4), 2)

    with pytest.raises(InvalidTransition):
        booking_engine.update_payment(b.id, host, new_status="refunded")

    assert booking_engine.payment_history(b.id, host) == []
    assert booking_engine.get_booking(b.id, host).payment_status == PS.PENDING
