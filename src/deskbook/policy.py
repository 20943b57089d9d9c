from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from .models import CONFIRMED, Booking, as_utc


@dataclass(frozen=True)
class CancellationPolicy:
    """When a booking may still be cancelled.

    ``min_notice`` is how long before the start a cancellation must arrive.
    With the default of zero a booking can be cancelled up to the instant it
    starts, but not at or after it.
    """

    min_notice: timedelta = timedelta(0)

    def can_cancel(self, booking: Booking, now: datetime) -> bool:
        if booking.status != CONFIRMED:
            return False
        return as_utc(booking.start_time) - self.min_notice > as_utc(now)


DEFAULT_POLICY = CancellationPolicy()


def can_cancel(booking: Booking, now: datetime) -> bool:
    return DEFAULT_POLICY.can_cancel(booking, now)
