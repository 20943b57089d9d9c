from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Interval


class BookingError(Exception):
    """Expected, recoverable outcome of a booking operation.

    Every subclass carries a stable ``code`` that the transport layer uses to
    build a distinguishable response.
    """

    code = "booking_error"
    default_message = "Booking request failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInterval(BookingError):
    code = "invalid_interval"
    default_message = "End time must be after start time"


class InPast(BookingError):
    code = "in_past"
    default_message = "Cannot book in the past"


class SpaceUnavailable(BookingError):
    code = "space_unavailable"
    default_message = "Space not found or not bookable"


class SpaceConflict(BookingError):
    code = "space_conflict"
    default_message = "Space is not available during the requested time"

    def __init__(self, message: str | None = None, conflicting: Interval | None = None) -> None:
        super().__init__(message)
        self.conflicting = conflicting


class ConstraintViolation(SpaceConflict):
    """Overlap detected by the ledger at commit time, after the service check passed."""

    code = "constraint_violation"
    default_message = "Space was booked by a concurrent request"


class UserConflict(BookingError):
    code = "user_conflict"
    default_message = "You already have a booking during this time"


class BookingNotFound(BookingError):
    code = "not_found"
    default_message = "Booking not found"


class Forbidden(BookingError):
    code = "forbidden"
    default_message = "Not authorized to access this booking"


class AlreadyCancelled(BookingError):
    code = "already_cancelled"
    default_message = "Booking is already cancelled"


class TooLate(BookingError):
    code = "too_late"
    default_message = "Cannot cancel a booking that has already started"


class SpaceNotFound(LookupError):
    """Raised by a space directory for an unknown space id."""
