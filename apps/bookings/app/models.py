from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .config import DB_SCHEMA


class ReservationStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    REFUNDED = "refunded"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIAL = "partial"


class ActorRole(str, enum.Enum):
    GUEST = "guest"
    HOST = "host"
    ADMIN = "admin"


PROPERTY_ACTIVE = "active"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _schema_opts() -> dict:
    return {"schema": DB_SCHEMA} if DB_SCHEMA else {}


def _fk(target: str) -> ForeignKey:
    return ForeignKey(f"{DB_SCHEMA}.{target}" if DB_SCHEMA else target)


def _status_enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    # Stored as plain strings (value, not member name) so rows stay readable
    # by reporting jobs that do not import these enums.
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=16,
        validate_strings=True,
        values_callable=lambda members: [m.value for m in members],
    )


Money = Numeric(10, 2)


class Base(DeclarativeBase):
    pass


class Property(Base):
    """Read model of a listing; owned and written by the catalog service."""

    __tablename__ = "properties"
    __table_args__ = (_schema_opts(),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    host_id: Mapped[str] = mapped_column(String(36), index=True)
    title: Mapped[str] = mapped_column(String(200))
    status: Mapped[str] = mapped_column(String(16), default=PROPERTY_ACTIVE)
    price_per_night: Mapped[Decimal] = mapped_column(Money)
    cleaning_fee: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    security_deposit: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    max_guests: Mapped[int] = mapped_column(Integer, default=1)
    min_nights: Mapped[int] = mapped_column(Integer, default=1)
    max_nights: Mapped[int] = mapped_column(Integer, default=0)  # 0 = unlimited
    advance_booking_days: Mapped[int] = mapped_column(Integer, default=0)  # 0 = unlimited
    is_instant_book: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_property_dates", "property_id", "check_in_date", "check_out_date"),
        Index("ix_bookings_guest_status", "guest_id", "status"),
        Index("ix_bookings_host_status", "host_id", "status"),
        Index("ix_bookings_payment_status", "payment_status"),
        CheckConstraint("check_out_date > check_in_date", name="ck_bookings_dates"),
        CheckConstraint("total_amount >= 0", name="ck_bookings_total_nonneg"),
        _schema_opts(),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    property_id: Mapped[int] = mapped_column(Integer, _fk("properties.id"))
    guest_id: Mapped[str] = mapped_column(String(36))
    host_id: Mapped[str] = mapped_column(String(36))
    check_in_date: Mapped[date] = mapped_column(Date)
    check_out_date: Mapped[date] = mapped_column(Date)
    guests_count: Mapped[int] = mapped_column(Integer, default=1)
    base_price: Mapped[Decimal] = mapped_column(Money)
    cleaning_fee: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    security_deposit: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    service_fee: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    total_amount: Mapped[Decimal] = mapped_column(Money)
    status: Mapped[ReservationStatus] = mapped_column(
        _status_enum(ReservationStatus, "reservation_status"), default=ReservationStatus.PENDING
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _status_enum(PaymentStatus, "payment_status"), default=PaymentStatus.PENDING
    )
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), default=None)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(100), default=None)
    special_requests: Mapped[Optional[str]] = mapped_column(Text, default=None)
    host_notes: Mapped[Optional[str]] = mapped_column(Text, default=None)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    cancelled_by: Mapped[Optional[ActorRole]] = mapped_column(
        _status_enum(ActorRole, "cancelled_by"), default=None
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    @property
    def nights(self) -> int:
        return (self.check_out_date - self.check_in_date).days


class Refund(Base):
    __tablename__ = "refunds"
    __table_args__ = (
        Index("ix_refunds_booking_processed", "booking_id", "processed_at"),
        CheckConstraint("refund_amount > 0", name="ck_refunds_amount_positive"),
        _schema_opts(),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(String(36), _fk("bookings.id"))
    refund_amount: Mapped[Decimal] = mapped_column(Money)
    refund_reason: Mapped[Optional[str]] = mapped_column(Text, default=None)
    refund_method: Mapped[str] = mapped_column(String(50), default="original_payment")
    processed_by: Mapped[str] = mapped_column(String(36))
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class PaymentHistory(Base):
    __tablename__ = "payment_history"
    __table_args__ = (
        Index("ix_payment_history_booking_created", "booking_id", "created_at"),
        _schema_opts(),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(String(36), _fk("bookings.id"))
    previous_status: Mapped[PaymentStatus] = mapped_column(_status_enum(PaymentStatus, "payment_history_previous"))
    new_status: Mapped[PaymentStatus] = mapped_column(_status_enum(PaymentStatus, "payment_history_new"))
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), default=None)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(100), default=None)
    updated_by: Mapped[str] = mapped_column(String(36))
    notes: Mapped[Optional[str]] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
