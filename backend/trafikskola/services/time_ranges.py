# backend/trafikskola/services/time_ranges.py
"""
Time-range overlap rules.

Pure functions over same-day wall-clock ranges. Intervals are half-open, so
a lesson ending at 11:00 does not collide with one starting at 11:00.

A booking is *active* for conflict purposes unless it is cancelled,
soft-deleted, or a provisional hold (``temp``/``on_hold``) whose age has
reached the hold window.
"""

from datetime import datetime, time, timedelta
from typing import Iterable, Optional, Protocol, Union

from ..core.config import settings
from ..core.enums import BookingStatus
from ..core.timezone_utils import ensure_utc, utc_now

TimeLike = Union[time, str]

_HOLD_STATES = {s.value for s in BookingStatus.holds()}


class BookingLike(Protocol):
    start_time: time
    end_time: time
    status: str
    created_at: Optional[datetime]
    deleted_at: Optional[datetime]


def parse_time(value: TimeLike) -> time:
    """Accept ``time`` objects or ``HH:MM`` / ``HH:MM:SS`` strings."""
    if isinstance(value, time):
        return value
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time value: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    return time(hour, minute, second)


def ranges_overlap(a_start: TimeLike, a_end: TimeLike, b_start: TimeLike, b_end: TimeLike) -> bool:
    a_start, a_end = parse_time(a_start), parse_time(a_end)
    b_start, b_end = parse_time(b_start), parse_time(b_end)
    return a_start < b_end and b_start < a_end


def hold_window() -> timedelta:
    return timedelta(minutes=settings.hold_window_minutes)


def is_hold_expired(booking: BookingLike, now: Optional[datetime] = None) -> bool:
    """True for temp/on_hold bookings at least one hold window old."""
    if booking.status not in _HOLD_STATES or booking.created_at is None:
        return False
    now = ensure_utc(now or utc_now())
    return now - ensure_utc(booking.created_at) >= hold_window()


def is_active_booking(
    booking: BookingLike, *, exclude_temporary: bool = False, now: Optional[datetime] = None
) -> bool:
    if booking.status == BookingStatus.CANCELLED.value or booking.deleted_at is not None:
        return False
    if booking.status in _HOLD_STATES:
        if exclude_temporary:
            return False
        return not is_hold_expired(booking, now)
    return True


def any_booking_overlaps(
    candidate_start: TimeLike,
    candidate_end: TimeLike,
    existing_bookings: Iterable[BookingLike],
    exclude_temporary: bool,
    *,
    now: Optional[datetime] = None,
) -> bool:
    """
    Check a candidate range against bookings that share its date.

    With ``exclude_temporary`` every hold is ignored; otherwise only expired
    holds are.
    """
    start, end = parse_time(candidate_start), parse_time(candidate_end)
    for booking in existing_bookings:
        if not is_active_booking(booking, exclude_temporary=exclude_temporary, now=now):
            continue
        if ranges_overlap(start, end, booking.start_time, booking.end_time):
            return True
    return False
