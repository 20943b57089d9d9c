"""
Free-slot and floor availability calculation.

Both functions only read the ledger. Free slots are whole-hour candidates
inside the business window; a candidate is dropped when it overlaps any
confirmed booking of the space on that day.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, date, datetime, time, timedelta, tzinfo

from .ledger import BookingLedger
from .models import CONFIRMED, Interval, Space, SpaceAvailability, overlaps

DEFAULT_BUSINESS_HOURS = (8, 18)


def day_window(day: date, tz: tzinfo = UTC) -> Interval:
    """The calendar day ``day`` in ``tz``, as an interval."""
    return Interval(
        start=datetime.combine(day, time.min, tzinfo=tz),
        end=datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz),
    )


def compute_free_slots(
    ledger: BookingLedger,
    space_id: str,
    day: date,
    slot_duration_hours: int,
    business_hours: tuple[int, int] = DEFAULT_BUSINESS_HOURS,
    tz: tzinfo = UTC,
) -> list[Interval]:
    """
    Free slots of ``slot_duration_hours`` for a space on ``day``.

    Candidates start at every whole hour from the business start up to and
    including ``business_end - slot_duration_hours``.

    Returns:
        Free slots, ascending by start. Empty when the slot is longer than
        the business window.
    """
    if isinstance(slot_duration_hours, bool) or not isinstance(slot_duration_hours, int):
        raise ValueError(f"slot_duration_hours must be an integer, got {slot_duration_hours!r}")
    if slot_duration_hours < 1:
        raise ValueError(f"slot_duration_hours must be positive, got {slot_duration_hours}")
    open_hour, close_hour = business_hours

    booked = [
        b.interval for b in ledger.list_by_space(space_id, day_window(day, tz), status=CONFIRMED)
    ]

    slots: list[Interval] = []
    for hour in range(open_hour, close_hour - slot_duration_hours + 1):
        start = datetime.combine(day, time(hour), tzinfo=tz)
        slot = Interval(start=start, end=start + timedelta(hours=slot_duration_hours))
        if not any(overlaps(slot, b) for b in booked):
            slots.append(slot)
    return slots


def compute_availability_flags(
    ledger: BookingLedger, spaces: Sequence[Space], interval: Interval
) -> list[SpaceAvailability]:
    return [
        SpaceAvailability(
            **space.model_dump(),
            is_available=not ledger.find_overlapping(space.space_id, interval),
        )
        for space in spaces
    ]
