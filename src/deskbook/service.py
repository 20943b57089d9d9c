from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import UTC, date, datetime, tzinfo

from aws_lambda_powertools import Logger

from .availability import DEFAULT_BUSINESS_HOURS, compute_availability_flags, compute_free_slots, day_window
from .exceptions import (
    AlreadyCancelled,
    BookingError,
    Forbidden,
    InPast,
    SpaceConflict,
    SpaceNotFound,
    SpaceUnavailable,
    TooLate,
    UserConflict,
)
from .ledger import BookingLedger
from .models import (
    CANCELLED,
    CONFIRMED,
    PAGE_LIMIT_DEFAULT,
    Booking,
    BookingFilters,
    BookingRequest,
    BookingStatus,
    Interval,
    Space,
    SpaceAvailability,
    SpaceSchedule,
    as_utc,
    utc_now,
)
from .policy import DEFAULT_POLICY, CancellationPolicy
from .spaces import SpaceDirectory

logger = Logger()

Clock = Callable[[], datetime]


class BookingService:
    """Single entry point that creates and cancels bookings.

    The conflict checks here give callers a precise error; the ledger's
    insert repeats them atomically, so two racing requests for the same
    slot can never both succeed.
    """

    def __init__(
        self,
        ledger: BookingLedger,
        spaces: SpaceDirectory,
        clock: Clock = utc_now,
        policy: CancellationPolicy = DEFAULT_POLICY,
        business_hours: tuple[int, int] = DEFAULT_BUSINESS_HOURS,
        tz: tzinfo = UTC,
    ) -> None:
        self.ledger = ledger
        self.spaces = spaces
        self._clock = clock
        self._policy = policy
        self._business_hours = business_hours
        self._tz = tz

    def _now(self) -> datetime:
        return as_utc(self._clock())

    def _bookable_space(self, space_id: str) -> Space:
        try:
            space = self.spaces.get_space(space_id)
        except SpaceNotFound as exc:
            raise SpaceUnavailable() from exc
        if not (space.is_active and space.is_bookable):
            raise SpaceUnavailable()
        return space

    def request_booking(self, request: BookingRequest) -> Booking:
        try:
            return self._request_booking(request)
        except BookingError as exc:
            logger.info(
                "Booking rejected",
                extra={"code": exc.code, "user_id": request.user_id, "space_id": request.space_id},
            )
            raise

    def _request_booking(self, request: BookingRequest) -> Booking:
        interval = Interval(start=request.start_time, end=request.end_time)
        now = self._now()
        if interval.start <= now:
            raise InPast()
        self._bookable_space(request.space_id)

        # any conflict will do; which one is reported is unspecified
        clashes = self.ledger.find_overlapping(request.space_id, interval)
        if clashes:
            raise SpaceConflict(conflicting=clashes[0].interval)
        if self.ledger.find_overlapping_for_user(request.user_id, interval):
            raise UserConflict()

        booking = Booking(
            booking_id=str(uuid.uuid4()),
            user_id=request.user_id,
            space_id=request.space_id,
            start_time=interval.start,
            end_time=interval.end,
            status=CONFIRMED,
            notes=request.notes,
            created_at=now,
            updated_at=now,
        )
        committed = self.ledger.insert(booking)
        logger.info(
            "Booking created",
            extra={"booking_id": committed.booking_id, "space_id": committed.space_id},
        )
        return committed

    def book(self, user_id: str, space_id: str, interval: Interval, notes: str | None = None) -> Booking:
        return self.request_booking(
            BookingRequest(
                user_id=user_id,
                space_id=space_id,
                start_time=interval.start,
                end_time=interval.end,
                notes=notes,
            )
        )

    def cancel_booking(self, booking_id: str, requester_id: str, is_admin: bool = False) -> Booking:
        booking = self.ledger.get(booking_id)
        if booking.user_id != requester_id and not is_admin:
            raise Forbidden("Not authorized to cancel this booking")
        if booking.status == CANCELLED:
            raise AlreadyCancelled()
        now = self._now()
        if not self._policy.can_cancel(booking, now):
            raise TooLate()
        cancelled = self.ledger.cancel(booking_id, now)
        logger.info(
            "Booking cancelled",
            extra={"booking_id": booking_id, "by_admin": is_admin and booking.user_id != requester_id},
        )
        return cancelled

    def get_booking(self, booking_id: str, requester_id: str, is_admin: bool = False) -> Booking:
        booking = self.ledger.get(booking_id)
        if booking.user_id != requester_id and not is_admin:
            raise Forbidden("Not authorized to view this booking")
        return booking

    def my_bookings(
        self,
        user_id: str,
        status: BookingStatus | None = CONFIRMED,
        limit: int = PAGE_LIMIT_DEFAULT,
        offset: int = 0,
    ) -> list[Booking]:
        return self.ledger.list_by_user(user_id, status, limit=limit, offset=offset)

    def admin_bookings(self, filters: BookingFilters) -> list[Booking]:
        return self.ledger.list_all(filters)

    def free_slots(self, space_id: str, day: date, slot_duration_hours: int = 1) -> SpaceSchedule:
        self._bookable_space(space_id)
        slots = compute_free_slots(
            self.ledger,
            space_id,
            day,
            slot_duration_hours,
            business_hours=self._business_hours,
            tz=self._tz,
        )
        existing = self.ledger.list_by_space(space_id, day_window(day, self._tz), status=CONFIRMED)
        return SpaceSchedule(
            space_id=space_id,
            day=day,
            slot_duration_hours=slot_duration_hours,
            free_slots=slots,
            existing_bookings=existing,
        )

    def floor_availability(self, floor_id: str, interval: Interval) -> list[SpaceAvailability]:
        spaces = [s for s in self.spaces.list_by_floor(floor_id) if s.is_active and s.is_bookable]
        return compute_availability_flags(self.ledger, spaces, interval)
