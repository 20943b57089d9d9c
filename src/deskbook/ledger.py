from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from threading import Lock
from typing import Protocol

from aws_lambda_powertools import Logger

from .exceptions import AlreadyCancelled, BookingNotFound, ConstraintViolation
from .models import (
    CANCELLED,
    CONFIRMED,
    PAGE_LIMIT_DEFAULT,
    Booking,
    BookingFilters,
    BookingStatus,
    Interval,
    as_utc,
    overlaps,
)

logger = Logger()


class BookingLedger(Protocol):
    """Authoritative store of bookings.

    ``insert`` is the only place the no-overlap invariants are enforced at
    commit time; implementations must make the check and the write atomic
    with respect to other inserts for the same space or the same user.
    """

    def get(self, booking_id: str) -> Booking: ...

    def find_overlapping(
        self, space_id: str, interval: Interval, status: BookingStatus | None = CONFIRMED
    ) -> list[Booking]: ...

    def find_overlapping_for_user(
        self, user_id: str, interval: Interval, status: BookingStatus | None = CONFIRMED
    ) -> list[Booking]: ...

    def insert(self, booking: Booking) -> Booking: ...

    def cancel(self, booking_id: str, at: datetime) -> Booking: ...

    def list_by_user(
        self,
        user_id: str,
        status: BookingStatus | None = None,
        limit: int = PAGE_LIMIT_DEFAULT,
        offset: int = 0,
    ) -> list[Booking]: ...

    def list_by_space(
        self, space_id: str, window: Interval, status: BookingStatus | None = None
    ) -> list[Booking]: ...

    def list_all(self, filters: BookingFilters) -> list[Booking]: ...


def by_start(bookings: Iterable[Booking], newest_first: bool = False) -> list[Booking]:
    return sorted(bookings, key=lambda b: (b.start_time, b.booking_id), reverse=newest_first)


def overlapping(
    bookings: Iterable[Booking], interval: Interval, status: BookingStatus | None
) -> list[Booking]:
    return by_start(
        b
        for b in bookings
        if (status is None or b.status == status) and overlaps(b.interval, interval)
    )


def apply_filters(bookings: Iterable[Booking], filters: BookingFilters) -> list[Booking]:
    """Filter, order newest-created first and paginate an admin listing."""
    start_from = as_utc(filters.start_from) if filters.start_from else None
    start_to = as_utc(filters.start_to) if filters.start_to else None

    def keep(b: Booking) -> bool:
        if filters.status is not None and b.status != filters.status:
            return False
        if filters.space_id is not None and b.space_id != filters.space_id:
            return False
        if filters.user_id is not None and b.user_id != filters.user_id:
            return False
        if start_from is not None and b.start_time < start_from:
            return False
        return not (start_to is not None and b.start_time > start_to)

    selected = sorted(
        (b for b in bookings if keep(b)),
        key=lambda b: (b.created_at, b.booking_id),
        reverse=True,
    )
    return selected[filters.offset : filters.offset + filters.limit]


class InMemoryLedger:
    """Process-local ledger; a single lock serializes every write."""

    def __init__(self, bookings: Iterable[Booking] = ()) -> None:
        self._items: dict[str, Booking] = {b.booking_id: b for b in bookings}
        self._lock = Lock()

    def _snapshot(self) -> list[Booking]:
        with self._lock:
            return list(self._items.values())

    def get(self, booking_id: str) -> Booking:
        with self._lock:
            booking = self._items.get(booking_id)
        if booking is None:
            raise BookingNotFound()
        return booking

    def find_overlapping(
        self, space_id: str, interval: Interval, status: BookingStatus | None = CONFIRMED
    ) -> list[Booking]:
        return overlapping((b for b in self._snapshot() if b.space_id == space_id), interval, status)

    def find_overlapping_for_user(
        self, user_id: str, interval: Interval, status: BookingStatus | None = CONFIRMED
    ) -> list[Booking]:
        return overlapping((b for b in self._snapshot() if b.user_id == user_id), interval, status)

    def insert(self, booking: Booking) -> Booking:
        interval = booking.interval
        with self._lock:
            if booking.booking_id in self._items:
                raise ValueError(f"Duplicate booking id {booking.booking_id}")
            for existing in self._items.values():
                if existing.status != CONFIRMED:
                    continue
                if existing.space_id != booking.space_id and existing.user_id != booking.user_id:
                    continue
                if overlaps(existing.interval, interval):
                    logger.info(
                        "Insert rejected at commit",
                        extra={"booking_id": booking.booking_id, "conflicting_id": existing.booking_id},
                    )
                    raise ConstraintViolation(conflicting=existing.interval)
            self._items[booking.booking_id] = booking
        return booking

    def cancel(self, booking_id: str, at: datetime) -> Booking:
        at = as_utc(at)
        with self._lock:
            current = self._items.get(booking_id)
            if current is None:
                raise BookingNotFound()
            if current.status == CANCELLED:
                raise AlreadyCancelled()
            cancelled = current.model_copy(
                update={"status": CANCELLED, "cancelled_at": at, "updated_at": at}
            )
            self._items[booking_id] = cancelled
        return cancelled

    def list_by_user(
        self,
        user_id: str,
        status: BookingStatus | None = None,
        limit: int = PAGE_LIMIT_DEFAULT,
        offset: int = 0,
    ) -> list[Booking]:
        mine = by_start(
            (
                b
                for b in self._snapshot()
                if b.user_id == user_id and (status is None or b.status == status)
            ),
            newest_first=True,
        )
        return mine[offset : offset + limit]

    def list_by_space(
        self, space_id: str, window: Interval, status: BookingStatus | None = None
    ) -> list[Booking]:
        return self.find_overlapping(space_id, window, status)

    def list_all(self, filters: BookingFilters) -> list[Booking]:
        return apply_filters(self._snapshot(), filters)
