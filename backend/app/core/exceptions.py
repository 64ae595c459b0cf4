"""
Domain errors raised by the booking services.

Services raise these instead of HTTPException so the same code path can be
driven from a route, the webhook receiver or the background sweeper. The
application registers one handler that renders them as JSON.
"""

from fastapi import status


class RailBookingError(Exception):
    """Base class for all domain errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "booking_error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context


class ConflictError(RailBookingError):
    """Seat already held by someone else or already booked."""

    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class NotFoundError(RailBookingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class AlreadyFinalizedError(RailBookingError):
    """A booking or payment already reached a different terminal state."""

    status_code = status.HTTP_409_CONFLICT
    code = "already_finalized"

    def __init__(self, message: str = "", current_status: str = "", **context):
        super().__init__(message, current_status=current_status, **context)
        self.current_status = current_status


class ValidationError(RailBookingError):
    status_code = 422
    code = "validation_error"


class UpstreamError(RailBookingError):
    """The payment gateway or the store failed or timed out."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "upstream_error"
