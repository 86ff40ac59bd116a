# backend/trafikskola/core/timezone_utils.py
"""
Timezone utilities.

Booking dates and wall-clock times are school-local (Europe/Stockholm by
default); audit timestamps are stored in UTC.
"""

from datetime import date, datetime, timezone

import pytz

from .config import settings


def get_school_timezone() -> pytz.BaseTzInfo:
    return pytz.timezone(settings.school_timezone)


def get_school_today() -> date:
    """Today's date in the school's timezone."""
    return datetime.now(get_school_timezone()).date()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """
    Attach UTC to naive datetimes.

    SQLite drops tzinfo on DateTime(timezone=True) columns, so values read
    back from it are naive but were written as UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
