"""
Time helpers
Local wall-clock handling for dose instants
"""

from datetime import datetime, date, time
from typing import Optional
from zoneinfo import ZoneInfo

from config import settings


def local_now(tz_name: Optional[str] = None) -> datetime:
    """
    Current wall-clock time in the configured timezone, as a naive datetime.

    Occurrence dates and HH:MM times are wall-clock values, so every comparison
    against them is done with naive local datetimes.
    """
    tz = ZoneInfo(tz_name or settings.TIMEZONE)
    return datetime.now(tz).replace(tzinfo=None, microsecond=0)


def parse_hhmm(value: str) -> time:
    """Parse a normalized HH:MM string"""
    return datetime.strptime(value, "%H:%M").time()


def combine(occurrence_date: date, occurrence_time: str) -> datetime:
    """Dose instant for a date and an HH:MM time"""
    return datetime.combine(occurrence_date, parse_hhmm(occurrence_time))


def normalize_time_of_day(value) -> str:
    """
    Normalize a time of day to zero-padded HH:MM.

    Accepts datetime.time objects and "H:MM", "HH:MM" or "HH:MM:SS" strings;
    seconds are dropped. Raises ValueError for anything else.
    """
    if isinstance(value, time):
        return f"{value.hour:02d}:{value.minute:02d}"
    if not isinstance(value, str):
        raise ValueError(f"Unsupported time of day: {value!r}")

    parts = value.strip().split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
        raise ValueError(f"Invalid time of day: {value!r}")
    if len(parts[1]) != 2:
        raise ValueError(f"Invalid time of day: {value!r}")

    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Time of day out of range: {value!r}")
    return f"{hour:02d}:{minute:02d}"


def coerce_date(value) -> date:
    """Accept a date, a datetime or an ISO YYYY-MM-DD string"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value.strip())
    raise ValueError(f"Unsupported date value: {value!r}")


def localize(instant: datetime, tz_name: Optional[str] = None) -> datetime:
    """Attach the configured timezone to a naive wall-clock instant"""
    return instant.replace(tzinfo=ZoneInfo(tz_name or settings.TIMEZONE))
