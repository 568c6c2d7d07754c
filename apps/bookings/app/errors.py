"""
Booking domain errors.

Every failure the engine reports is a ``BookingError`` subclass carrying a
stable ``kind``, the HTTP status it maps to, a human message and, where one
exists, the offending field or state so callers can render an actionable
message.
"""

from __future__ import annotations

from typing import Any, Optional


class BookingError(Exception):
    kind = "error"
    status_code = 400

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"detail": self.message, "kind": self.kind}
        if self.field:
            out["field"] = self.field
        for k, v in self.details.items():
            if v is not None:
                out[k] = v
        return out


class ValidationError(BookingError):
    kind = "validation_error"
    status_code = 400


class NotFound(BookingError):
    kind = "not_found"
    status_code = 404


class Conflict(BookingError):
    kind = "conflict"
    status_code = 409


class ConcurrentModification(Conflict):
    kind = "concurrent_modification"


class NotAvailable(BookingError):
    kind = "not_available"
    status_code = 409


class InvalidTransition(BookingError):
    kind = "invalid_transition"
    status_code = 409

    def __init__(self, current: str, requested: str, message: Optional[str] = None, *, field: str = "status"):
        super().__init__(
            message or f"cannot change {field} from {current} to {requested}",
            field=field,
            current=current,
            requested=requested,
        )
        self.current = current
        self.requested = requested


class Forbidden(BookingError):
    kind = "forbidden"
    status_code = 403


class InvariantViolation(BookingError):
    kind = "invariant_violation"
    status_code = 500
