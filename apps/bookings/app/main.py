from __future__ import annotations

import logging
import os
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session
from starlette.middleware.trustedhost import TrustedHostMiddleware
from staybook_shared import (
    RequestIDMiddleware,
    add_standard_health,
    configure_cors,
    get_request_id,
    register_shutdown,
    register_startup,
    setup_json_logging,
)

from .actors import Actor
from .config import AUTO_CREATE_SCHEMA, DB_URL, ENV, is_prod_env
from .engine import Availability, BookingEngine
from .errors import BookingError
from .models import ActorRole, Base, Booking, PaymentStatus, ReservationStatus
from .repository import SqlBookingRepository

_errors_log = logging.getLogger("staybook.errors")


if DB_URL.startswith("sqlite"):
    engine = create_engine(DB_URL, pool_pre_ping=True, connect_args={"check_same_thread": False})
else:
    engine = create_engine(DB_URL, pool_pre_ping=True)


def get_session():
    with Session(engine) as s:
        yield s


def get_booking_engine(s: Session = Depends(get_session)) -> BookingEngine:
    return BookingEngine(SqlBookingRepository(s))


def get_actor(
    actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
    actor_role: Optional[str] = Header(default=None, alias="X-Actor-Role"),
) -> Actor:
    # Identity is resolved upstream; the gateway forwards the verified caller.
    return Actor.parse(actor_id, actor_role)


def _db_ping() -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


# Never expose interactive API docs by default in prod.
_ENABLE_DOCS = ENV in ("dev", "test") or os.getenv("ENABLE_API_DOCS_IN_PROD", "").lower() in (
    "1",
    "true",
    "yes",
    "on",
)
app = FastAPI(
    title="Bookings API",
    version="0.1.0",
    docs_url="/docs" if _ENABLE_DOCS else None,
    redoc_url="/redoc" if _ENABLE_DOCS else None,
    openapi_url="/openapi.json" if _ENABLE_DOCS else None,
)
setup_json_logging()
app.add_middleware(RequestIDMiddleware)
configure_cors(app, os.getenv("ALLOWED_ORIGINS", ""))
add_standard_health(app, checks={"db": _db_ping})

# Trusted hosts: mitigate Host header attacks and misrouting.
_allowed_hosts_raw = (os.getenv("ALLOWED_HOSTS") or "").strip()
if _allowed_hosts_raw:
    _allowed_hosts = [h.strip() for h in _allowed_hosts_raw.split(",") if h.strip()]
    for _extra in ("localhost", "127.0.0.1", "testserver"):
        if _extra not in _allowed_hosts:
            _allowed_hosts.append(_extra)
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=_allowed_hosts)


@register_startup(app)
def _create_schema():
    # Deployments run alembic; dev and test boot straight from the models.
    if AUTO_CREATE_SCHEMA:
        Base.metadata.create_all(engine)


@register_shutdown(app)
def _dispose_engine():
    engine.dispose()


@app.exception_handler(BookingError)
async def _booking_error_handler(request: Request, exc: BookingError):
    # Domain errors name the failed precondition, so they are returned as-is
    # in every environment; only unhandled exceptions are scrubbed.
    if exc.status_code >= 500:
        _errors_log.error(
            "booking invariant violated",
            extra={"kind": exc.kind, "path": request.url.path, "details": exc.details},
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    rid = get_request_id()
    _errors_log.exception("unhandled exception", extra={"path": request.url.path})
    if is_prod_env():
        return JSONResponse(status_code=500, content={"detail": "internal error", "request_id": rid})
    # dev/test: keep a useful error message for debugging.
    return JSONResponse(status_code=500, content={"detail": str(exc), "request_id": rid})


router = APIRouter()


# ---- schemas ----

class PricingIn(BaseModel):
    property_id: int
    check_in_date: date
    check_out_date: date
    guests_count: int = 1


class PricingOut(BaseModel):
    base_price: Decimal
    cleaning_fee: Decimal
    security_deposit: Decimal
    service_fee: Decimal
    total_amount: Decimal
    model_config = ConfigDict(from_attributes=True)


class SpanOut(BaseModel):
    id: str
    check_in_date: date
    check_out_date: date
    status: ReservationStatus
    model_config = ConfigDict(from_attributes=True)


class AvailabilityOut(BaseModel):
    property_id: int
    check_in_date: date
    check_out_date: date
    guests_count: int
    available: bool
    nights: int
    pricing: Optional[PricingOut] = None
    conflicts: List[SpanOut] = []


class BookedDatesOut(BaseModel):
    property_id: int
    start_date: date
    end_date: date
    bookings: List[SpanOut]


class BookingCreate(BaseModel):
    property_id: int
    check_in_date: date
    check_out_date: date
    guests_count: int
    special_requests: Optional[str] = None
    payment_method: Optional[str] = None


class BookingOut(BaseModel):
    id: str
    property_id: int
    guest_id: str
    host_id: str
    check_in_date: date
    check_out_date: date
    nights: int
    guests_count: int
    base_price: Decimal
    cleaning_fee: Decimal
    security_deposit: Decimal
    service_fee: Decimal
    total_amount: Decimal
    status: ReservationStatus
    payment_status: PaymentStatus
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    special_requests: Optional[str] = None
    host_notes: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[ActorRole] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class PermissionsOut(BaseModel):
    can_cancel: bool
    can_update_status: bool
    can_update_payment: bool
    can_refund: bool
    model_config = ConfigDict(from_attributes=True)


class BookingDetailOut(BaseModel):
    booking: BookingOut
    permissions: PermissionsOut


class BookingListOut(BaseModel):
    bookings: List[BookingOut]
    total: int
    page: int
    limit: int
    pages: int


class StatusIn(BaseModel):
    status: str
    notes: Optional[str] = None
    reason: Optional[str] = None


class CancelIn(BaseModel):
    reason: Optional[str] = None


class PaymentIn(BaseModel):
    payment_status: Optional[str] = None
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    notes: Optional[str] = None


class PaymentHistoryOut(BaseModel):
    id: int
    booking_id: str
    previous_status: PaymentStatus
    new_status: PaymentStatus
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    updated_by: str
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class PaymentUpdateOut(BaseModel):
    booking: BookingOut
    previous_status: PaymentStatus
    payment_status: PaymentStatus
    auto_confirmed: bool


class RefundIn(BaseModel):
    refund_amount: Decimal
    refund_reason: Optional[str] = None
    refund_method: Optional[str] = None


class RefundOut(BaseModel):
    id: int
    booking_id: str
    refund_amount: Decimal
    refund_reason: Optional[str] = None
    refund_method: str
    processed_by: str
    processed_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class RefundResultOut(BaseModel):
    refund: RefundOut
    booking: BookingOut
    full_refund: bool
    refunded_total: Decimal


class FinancialsOut(BaseModel):
    booking_id: str
    total_amount: Decimal
    refunded_total: Decimal
    net_amount: Decimal
    remaining_refundable: Decimal
    payment_status: PaymentStatus
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    refunds: List[RefundOut]


def _detail(eng: BookingEngine, b: Booking, actor: Actor) -> BookingDetailOut:
    return BookingDetailOut(
        booking=BookingOut.model_validate(b),
        permissions=PermissionsOut.model_validate(eng.permissions_for(b, actor)),
    )


# ---- availability & pricing ----

@router.get("/properties/{property_id}/availability", response_model=AvailabilityOut)
def check_availability(
    property_id: int,
    check_in_date: date,
    check_out_date: date,
    guests_count: int = 1,
    eng: BookingEngine = Depends(get_booking_engine),
):
    a: Availability = eng.check_availability(property_id, check_in_date, check_out_date, guests_count)
    return AvailabilityOut(
        property_id=property_id,
        check_in_date=check_in_date,
        check_out_date=check_out_date,
        guests_count=guests_count,
        available=a.available,
        nights=a.nights,
        pricing=PricingOut.model_validate(a.pricing) if a.pricing else None,
        conflicts=[SpanOut.model_validate(b) for b in a.conflicts],
    )


@router.get("/properties/{property_id}/booked-dates", response_model=BookedDatesOut)
def booked_dates(
    property_id: int,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    eng: BookingEngine = Depends(get_booking_engine),
):
    return BookedDatesOut.model_validate(eng.booked_dates(property_id, start_date, end_date), from_attributes=True)


@router.post("/pricing", response_model=PricingOut)
def calculate_pricing(req: PricingIn, eng: BookingEngine = Depends(get_booking_engine)):
    p = eng.calculate_pricing(req.property_id, req.check_in_date, req.check_out_date, req.guests_count)
    return PricingOut.model_validate(p)


# ---- bookings ----

@router.post("/bookings", response_model=BookingOut, status_code=201)
def create_booking(
    req: BookingCreate,
    actor: Actor = Depends(get_actor),
    eng: BookingEngine = Depends(get_booking_engine),
):
    b = eng.create_booking(
        req.property_id,
        actor,
        req.check_in_date,
        req.check_out_date,
        req.guests_count,
        special_requests=req.special_requests,
        payment_method=req.payment_method,
    )
    return BookingOut.model_validate(b)


@router.get("/bookings", response_model=BookingListOut)
def list_bookings(
    status: Optional[str] = None,
    property_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    guest_id: Optional[str] = None,
    host_id: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    actor: Actor = Depends(get_actor),
    eng: BookingEngine = Depends(get_booking_engine),
):
    res = eng.list_bookings(
        actor,
        status=status,
        property_id=property_id,
        start_date=start_date,
        end_date=end_date,
        guest_id=guest_id,
        host_id=host_id,
        page=page,
        limit=limit,
    )
    return BookingListOut(
        bookings=[BookingOut.model_validate(b) for b in res.items],
        total=res.total,
        page=res.page,
        limit=res.limit,
        pages=res.pages,
    )


@router.get("/bookings/{booking_id}", response_model=BookingDetailOut)
def get_booking(booking_id: str, actor: Actor = Depends(get_actor), eng: BookingEngine = Depends(get_booking_engine)):
    return _detail(eng, eng.get_booking(booking_id, actor), actor)


@router.post("/bookings/{booking_id}/status", response_model=BookingDetailOut)
def update_status(
    booking_id: str,
    req: StatusIn,
    actor: Actor = Depends(get_actor),
    eng: BookingEngine = Depends(get_booking_engine),
):
    b = eng.transition_status(booking_id, req.status, actor, notes=req.notes, reason=req.reason)
    return _detail(eng, b, actor)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingDetailOut)
def cancel_booking(
    booking_id: str,
    req: CancelIn,
    actor: Actor = Depends(get_actor),
    eng: BookingEngine = Depends(get_booking_engine),
):
    return _detail(eng, eng.cancel_booking(booking_id, actor, reason=req.reason), actor)


@router.post("/bookings/{booking_id}/payment", response_model=PaymentUpdateOut)
def update_payment(
    booking_id: str,
    req: PaymentIn,
    actor: Actor = Depends(get_actor),
    eng: BookingEngine = Depends(get_booking_engine),
):
    change = eng.update_payment(
        booking_id,
        actor,
        new_status=req.payment_status,
        method=req.payment_method,
        reference=req.payment_reference,
        note=req.notes,
    )
    return PaymentUpdateOut(
        booking=BookingOut.model_validate(eng.get_booking(booking_id, actor)),
        previous_status=change.previous,
        payment_status=change.current,
        auto_confirmed=change.auto_confirmed,
    )


@router.get("/bookings/{booking_id}/payment-history", response_model=List[PaymentHistoryOut])
def payment_history(booking_id: str, actor: Actor = Depends(get_actor), eng: BookingEngine = Depends(get_booking_engine)):
    return [PaymentHistoryOut.model_validate(h) for h in eng.payment_history(booking_id, actor)]


@router.post("/bookings/{booking_id}/refunds", response_model=RefundResultOut, status_code=201)
def process_refund(
    booking_id: str,
    req: RefundIn,
    actor: Actor = Depends(get_actor),
    eng: BookingEngine = Depends(get_booking_engine),
):
    out = eng.process_refund(booking_id, req.refund_amount, actor, reason=req.refund_reason, method=req.refund_method)
    return RefundResultOut(
        refund=RefundOut.model_validate(out.refund),
        booking=BookingOut.model_validate(eng.get_booking(booking_id, actor)),
        full_refund=out.full,
        refunded_total=out.refunded_total,
    )


@router.get("/bookings/{booking_id}/financials", response_model=FinancialsOut)
def booking_financials(booking_id: str, actor: Actor = Depends(get_actor), eng: BookingEngine = Depends(get_booking_engine)):
    f = eng.booking_financials(booking_id, actor)
    b = f.booking
    return FinancialsOut(
        booking_id=b.id,
        total_amount=b.total_amount,
        refunded_total=f.refunded_total,
        net_amount=f.net_amount,
        remaining_refundable=f.remaining_refundable,
        payment_status=b.payment_status,
        payment_method=b.payment_method,
        payment_reference=b.payment_reference,
        refunds=[RefundOut.model_validate(r) for r in f.refunds],
    )


app.include_router(router)
