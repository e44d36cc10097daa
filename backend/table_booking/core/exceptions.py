"""
Reservation error taxonomy and the FastAPI handler that renders it.

Every business-rule violation is raised as a ReservationError subclass from
inside the service. Each carries the HTTP status and error code the REST
adapter responds with, so routes never translate errors themselves.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from fastapi import Request, status
from fastapi.responses import JSONResponse

from table_booking.core.config import get_settings
from table_booking.core.logging import get_logger

logger = get_logger(__name__)


class ReservationError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST
    error_code: str = "BAD_REQUEST"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationFailure(ReservationError):
    """Malformed or out-of-range input. `fields` maps field name to message."""

    error_code = "VALIDATION_ERROR"

    def __init__(self, fields: dict[str, str], message: str = "Reservation data failed validation"):
        super().__init__(message, details={"fields": fields})
        self.fields = fields


class InvalidQuery(ValidationFailure):
    error_code = "INVALID_QUERY"

    def __init__(self, fields: dict[str, str]):
        super().__init__(fields, message="Invalid listing query")


class SchedulingConflict(ReservationError):
    status_code = status.HTTP_409_CONFLICT
    error_code = "SCHEDULING_CONFLICT"

    def __init__(self, field: str = "arrival_time"):
        super().__init__(
            "You already have another reservation around this time, please choose a different time",
            details={"field": field},
        )
        self.field = field


class InvalidStateTransition(ReservationError):
    status_code = status.HTTP_409_CONFLICT
    error_code = "INVALID_STATE_TRANSITION"

    def __init__(
        self,
        current: str,
        requested: str,
        allowed: Sequence[str] = (),
        message: Optional[str] = None,
    ):
        super().__init__(
            message or f"Cannot change status from {current} to {requested}",
            details={"current": current, "requested": requested, "allowed": list(allowed)},
        )
        self.current = current
        self.requested = requested
        self.allowed = list(allowed)


class MissingReason(ReservationError):
    error_code = "MISSING_REASON"

    def __init__(self, message: str = "A reason is required to cancel a reservation"):
        super().__init__(message, details={"field": "reason"})


class NotFound(ReservationError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "RESERVATION_NOT_FOUND"

    def __init__(self, reservation_id: int):
        super().__init__(
            f"Reservation {reservation_id} not found",
            details={"resource": reservation_id},
        )
        self.reservation_id = reservation_id


class Forbidden(ReservationError):
    status_code = status.HTTP_403_FORBIDDEN
    error_code = "FORBIDDEN"


class ConcurrentModification(ReservationError):
    status_code = status.HTTP_409_CONFLICT
    error_code = "CONCURRENT_MODIFICATION"

    def __init__(self, reservation_id: int):
        super().__init__(
            f"Reservation {reservation_id} was modified concurrently, reload and try again",
            details={"resource": reservation_id},
        )
        self.reservation_id = reservation_id


class StoreUnavailable(ReservationError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "STORE_UNAVAILABLE"

    def __init__(self, operation: str):
        super().__init__(f"Reservation store unavailable during {operation}", details={"operation": operation})
        self.operation = operation


class AuditTrailViolation(RuntimeError):
    """A write would rewrite, drop or desynchronise status history entries."""


async def reservation_error_handler(request: Request, exc: ReservationError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "reservation_request_rejected",
        error_code=exc.error_code,
        status_code=exc.status_code,
        message=exc.message,
        details=exc.details,
    )

    body: dict[str, Any] = {
        "success": False,
        "message": exc.message,
        "error_code": exc.error_code,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "path": request.url.path,
    }
    if get_settings().ENVIRONMENT != "production" and exc.details:
        body["details"] = exc.details

    return JSONResponse(status_code=exc.status_code, content=body)
