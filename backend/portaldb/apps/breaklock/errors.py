"""Controlled errors raised by the BreakLock services.

Routers translate them into HTTP responses; the expiry sweep counts them.
"""

from __future__ import annotations

from typing import Any, Optional


class AdmissionError(Exception):
    code = "admission_error"
    http_status = 400
    default_message = "BreakLock request rejected"

    def __init__(self, message: Optional[str] = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_detail(self) -> dict:
        detail = {"code": self.code, "message": self.message}
        for key, value in self.context.items():
            if key == "record":
                continue
            detail[key] = value.isoformat() if hasattr(value, "isoformat") else value
        return detail


class AlreadyActive(AdmissionError):
    """Soft success: the subject already holds a slot."""

    code = "already_active"
    http_status = 200
    default_message = "You are already on break"

    @property
    def record(self):
        return self.context.get("record")


class CapacityReached(AdmissionError):
    code = "capacity_reached"
    http_status = 409
    default_message = "Breaks locked, capacity reached. Try again when a slot frees up."


class NotActive(AdmissionError):
    code = "not_active"
    http_status = 409
    default_message = "You are not on break"


class NotFound(AdmissionError):
    code = "not_found"
    http_status = 404
    default_message = "Break not found or already ended"


class Forbidden(AdmissionError):
    code = "forbidden"
    http_status = 403
    default_message = "Admins only"


class InvalidValue(AdmissionError):
    code = "invalid_value"
    http_status = 422
    default_message = "Value must be a positive integer"


class StoreUnavailable(AdmissionError):
    code = "store_unavailable"
    http_status = 503
    default_message = "Break store temporarily unavailable, please retry"
