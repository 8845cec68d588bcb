"""
Calendar-day arithmetic on epoch-millisecond timestamps.

Day boundaries are wall-clock midnights in the configured time zone, so a
day can be 23 or 25 hours long across DST changes.
"""

import calendar
import time as time_module
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import List, Tuple
from zoneinfo import ZoneInfo

MS_PER_SECOND = 1000
MS_PER_MINUTE = 60 * MS_PER_SECOND
MS_PER_HOUR = 60 * MS_PER_MINUTE


def resolve_timezone(name: str) -> tzinfo:
    """Return a tzinfo for an IANA zone name ("UTC" needs no tz database)."""
    if not name:
        raise ValueError("timezone name cannot be empty")
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def to_millis(moment: datetime) -> int:
    """Convert an aware datetime to epoch milliseconds."""
    if moment.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return int(moment.timestamp() * MS_PER_SECOND)


def day_of(timestamp: int, tz: tzinfo) -> date:
    """Calendar day containing the timestamp."""
    return datetime.fromtimestamp(timestamp / MS_PER_SECOND, tz).date()


def day_bounds(day: date, tz: tzinfo) -> Tuple[int, int]:
    """Return ``[start, end)`` of the day in epoch milliseconds."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return to_millis(start), to_millis(end)


def range_bounds(first_day: date, last_day: date, tz: tzinfo) -> Tuple[int, int]:
    """Return ``[start, end)`` covering an inclusive range of days."""
    if first_day > last_day:
        raise ValueError("first_day must not be after last_day")
    start, _ = day_bounds(first_day, tz)
    _, end = day_bounds(last_day, tz)
    return start, end


def days_spanned(start_timestamp: int, end_timestamp: int, tz: tzinfo) -> List[date]:
    """Every calendar day touched by ``[start, end]``, in order."""
    first = day_of(start_timestamp, tz)
    last = day_of(end_timestamp, tz)
    days = []
    current = first
    while current <= last:
        days.append(current)
        current += timedelta(days=1)
    return days


def week_start(day: date) -> date:
    """Monday of the ISO week containing ``day``."""
    return day - timedelta(days=day.weekday())


def month_start(day: date) -> date:
    """First day of the calendar month containing ``day``."""
    return day.replace(day=1)


def days_in_month(day: date) -> int:
    """Number of days in the calendar month containing ``day``."""
    return calendar.monthrange(day.year, day.month)[1]


def previous_month(day: date) -> date:
    """First day of the month before the one containing ``day``."""
    return month_start(month_start(day) - timedelta(days=1))


def now_millis() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time_module.time() * MS_PER_SECOND)
