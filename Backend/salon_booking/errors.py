"""
Booking error taxonomy.

Every failure surfaced by the booking core carries a machine-readable
``code`` plus a human-readable ``message``. The HTTP layer maps them onto
status codes through ``status_code``; nothing else needs to know about HTTP.

    ValidationError  malformed or missing input             (never retried)
    NotFoundError    service/stylist/offer/appointment absent (never retried)
    StateError       inactive entity, unusable offer, illegal transition
    ConflictError    slot taken or concurrent modification
    PolicyError      cancellation window or role restriction
    TransientError   storage did not answer in time after retries
    PricingError     internal pricing defect (negative intermediate)
"""

from typing import Any, Optional

from .core.responses import ErrorCodes


class BookingError(Exception):
    """Base class for all booking-core errors."""

    code: str = ErrorCodes.INTERNAL_ERROR
    status_code: int = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(BookingError):
    code = ErrorCodes.VALIDATION_ERROR
    status_code = 422


class NotFoundError(BookingError):
    code = ErrorCodes.NOT_FOUND
    status_code = 404


class StateError(BookingError):
    code = ErrorCodes.STATE_CONFLICT
    status_code = 409


class ConflictError(BookingError):
    code = ErrorCodes.CONFLICT
    status_code = 409


class PolicyError(BookingError):
    code = ErrorCodes.POLICY_VIOLATION
    status_code = 403


class TransientError(BookingError):
    code = ErrorCodes.TIMEOUT
    status_code = 503


class PricingError(BookingError):
    code = ErrorCodes.INTERNAL_ERROR
    status_code = 500
