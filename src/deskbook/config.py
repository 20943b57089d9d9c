from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from zoneinfo import ZoneInfo


@dataclass(frozen=True)
class Settings:
    """
    Runtime configuration, read from the Lambda environment.

    Attributes:
        table_name: bookings table
        calendar_table_name: per-space / per-user calendar documents
        spaces_table_name: space directory
        business_hours_start: first hour a free slot may start
        business_hours_end: hour by which every free slot ends
        timezone: zone the business hours are expressed in
        commit_attempts: optimistic-lock attempts per write
    """

    table_name: str = "bookings"
    calendar_table_name: str = "booking_calendars"
    spaces_table_name: str = "spaces"
    business_hours_start: int = 8
    business_hours_end: int = 18
    timezone: str = "UTC"
    commit_attempts: int = 3

    def __post_init__(self):
        if not 0 <= self.business_hours_start < self.business_hours_end <= 24:
            raise ValueError(
                f"Invalid business hours {self.business_hours_start}-{self.business_hours_end}"
            )
        if self.commit_attempts < 1:
            raise ValueError(f"commit_attempts must be at least 1, got {self.commit_attempts}")

    @property
    def business_hours(self) -> tuple[int, int]:
        return self.business_hours_start, self.business_hours_end

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @classmethod
    def from_env(cls) -> Settings:
        env = os.environ
        return cls(
            table_name=env.get("TABLE_NAME", "bookings"),
            calendar_table_name=env.get("CALENDAR_TABLE_NAME", "booking_calendars"),
            spaces_table_name=env.get("SPACES_TABLE_NAME", "spaces"),
            business_hours_start=int(env.get("BUSINESS_HOURS_START", "8")),
            business_hours_end=int(env.get("BUSINESS_HOURS_END", "18")),
            timezone=env.get("BOOKING_TIMEZONE", "UTC"),
            commit_attempts=int(env.get("COMMIT_ATTEMPTS", "3")),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
