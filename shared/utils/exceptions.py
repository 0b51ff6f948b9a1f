"""
shared/utils/exceptions.py
Booking and availability validation errors.

Every rejection carries a machine-readable code, an HTTP status and a
user-facing message. These are validation outcomes, never infrastructure
failures: database or Redis errors propagate unchanged to the global handler.
"""

from fastapi import Request
from fastapi.responses import JSONResponse
import logging

logger = logging.getLogger(__name__)


class BookingValidationError(Exception):
    """Base class for rejections reported synchronously to the caller."""

    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "The request could not be validated"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidDurationError(BookingValidationError):
    code = "INVALID_DURATION"
    default_message = "Calls must be 30 or 60 minutes long"


class PastDateError(BookingValidationError):
    code = "PAST_DATE"
    default_message = "Cannot book a call in the past"


class IntervalQuantizationError(BookingValidationError):
    code = "INVALID_INTERVAL"
    default_message = "Calls must start on 15-minute intervals"


class OutsideAvailabilityError(BookingValidationError):
    code = "OUTSIDE_AVAILABILITY"
    default_message = (
        "The selected time is outside the guide's available hours. "
        "Please choose a different time."
    )


class BlockedDateError(BookingValidationError):
    code = "DATE_BLOCKED"
    default_message = "The guide is unavailable on this date"


class BookingConflictError(BookingValidationError):
    status_code = 409
    code = "SLOT_TAKEN"
    default_message = "This time slot is already booked. Please choose a different time."


class OverlappingWindowError(BookingValidationError):
    status_code = 409
    code = "WINDOW_OVERLAP"
    default_message = "This slot overlaps with an existing availability slot"


class InvalidTransitionError(BookingValidationError):
    code = "INVALID_TRANSITION"
    default_message = "This call cannot move to the requested status"


async def booking_validation_exception_handler(
    request: Request,
    exc: BookingValidationError,
) -> JSONResponse:
    """Render a validation rejection as {"detail", "code"}."""
    logger.info(f"Rejected {request.method} {request.url.path}: {exc.code}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )
