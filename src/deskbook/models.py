from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .exceptions import InvalidInterval

BookingStatus = Literal["confirmed", "cancelled"]
CONFIRMED: BookingStatus = "confirmed"
CANCELLED: BookingStatus = "cancelled"

NOTES_MAX_LENGTH = 500
PAGE_LIMIT_DEFAULT = 50
PAGE_LIMIT_MAX = 200


def as_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def utc_now() -> datetime:
    return datetime.now(UTC)


class Interval(BaseModel):
    """Half-open time interval ``[start, end)``."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _normalize(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> Interval:
        if self.end <= self.start:
            raise InvalidInterval()
        return self


def overlaps(a: Interval, b: Interval) -> bool:
    # touching endpoints do not overlap
    return a.start < b.end and b.start < a.end


def duration(a: Interval) -> timedelta:
    return a.end - a.start


def contains(a: Interval, instant: datetime) -> bool:
    return a.start <= as_utc(instant) < a.end


class BookingCreate(BaseModel):
    space_id: str = Field(..., min_length=1)
    start_time: datetime
    end_time: datetime
    notes: str | None = Field(default=None, max_length=NOTES_MAX_LENGTH)

    @field_validator("notes")
    @classmethod
    def _strip_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


class BookingRequest(BookingCreate):
    """A booking request on behalf of a known user, as accepted by the service."""

    user_id: str = Field(..., min_length=1)


class Booking(BaseModel):
    booking_id: str
    user_id: str
    space_id: str
    start_time: datetime
    end_time: datetime
    status: BookingStatus = CONFIRMED
    cancelled_at: datetime | None = None
    notes: str | None = None
    created_at: datetime
    updated_at: datetime

    @field_validator("start_time", "end_time", "cancelled_at", "created_at", "updated_at")
    @classmethod
    def _normalize(cls, value: datetime | None) -> datetime | None:
        return None if value is None else as_utc(value)

    @property
    def interval(self) -> Interval:
        return Interval(start=self.start_time, end=self.end_time)


class BookingFilters(BaseModel):
    status: BookingStatus | None = None
    space_id: str | None = None
    user_id: str | None = None
    # inclusive bounds on start_time
    start_from: datetime | None = None
    start_to: datetime | None = None
    limit: int = Field(default=PAGE_LIMIT_DEFAULT, ge=1, le=PAGE_LIMIT_MAX)
    offset: int = Field(default=0, ge=0)


class Space(BaseModel):
    space_id: str
    floor_id: str
    name: str
    space_type: str | None = None
    capacity: int | None = None
    features: list[str] = Field(default_factory=list)
    is_bookable: bool = True
    is_active: bool = True


class SpaceAvailability(Space):
    is_available: bool


class SpaceSchedule(BaseModel):
    space_id: str
    day: date
    slot_duration_hours: int
    free_slots: list[Interval]
    existing_bookings: list[Booking]
