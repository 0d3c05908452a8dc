"""
scheduling/time_utils.py

Clock and calendar helpers.  Timestamps are stored in UTC; "today" and
appointment dates and times are in the clinic timezone
(``Settings.timezone``).
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

from storage.config import get_settings


def now_utc() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def local_today() -> date:
    """Calendar date "today" in the clinic timezone."""
    return now_utc().astimezone(get_settings().tz).date()


def parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":", 1)
    return time(int(hours), int(minutes))


def appointment_start(day: date, hhmm: str) -> datetime:
    """Combine a calendar date and an ``HH:MM`` string into an aware datetime."""
    return datetime.combine(day, parse_hhmm(hhmm), tzinfo=get_settings().tz)


def iter_slots(start_hour: int, end_hour: int, minutes: int):
    """Yield ``HH:MM`` labels from *start_hour* up to (not including) *end_hour*."""
    cursor = datetime.combine(date.min, time(start_hour))
    end = datetime.combine(date.min, time(0)) + timedelta(hours=end_hour)
    step = timedelta(minutes=minutes)
    while cursor + step <= end:
        yield cursor.strftime("%H:%M")
        cursor += step


def generate_code(prefix: str) -> str:
    """Human-readable id such as ``APT-482913``: prefix plus the last six digits of the ms clock."""
    millis = str(int(now_utc().timestamp() * 1000))
    return f"{prefix}-{millis[-6:]}"
