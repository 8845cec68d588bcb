"""
Usage aggregation over the session log.

Daily totals are derived from stored sessions and cached as immutable
snapshots keyed by (app, day). A snapshot is only ever replaced whole, and
writes invalidate the affected (app, day) keys instead of patching totals.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import date, timedelta, tzinfo
from typing import Dict, Iterable, List, Optional, Tuple

from zenlock.core.days import (
    MS_PER_HOUR,
    MS_PER_MINUTE,
    MS_PER_SECOND,
    day_bounds,
    days_in_month,
    month_start,
    week_start,
)
from zenlock.storage.models import UsageEvent
from zenlock.storage.repository import UsageRepository

logger = logging.getLogger("zenlock")


@dataclass(frozen=True)
class DailyAggregate:
    """Usage of one app on one calendar day."""
    app_identifier: str
    day: date
    total_used_ms: int
    session_count: int

    def __post_init__(self):
        """Validate totals are non-negative."""
        if self.total_used_ms < 0:
            raise ValueError("total_used_ms cannot be negative")
        if self.session_count < 0:
            raise ValueError("session_count cannot be negative")


@dataclass(frozen=True)
class WeeklyAggregate:
    """Usage of one app over a Monday-to-Sunday week."""
    app_identifier: str
    week_start: date
    days: Tuple[DailyAggregate, ...]

    @property
    def total_used_ms(self) -> int:
        """Sum of the daily totals."""
        return sum(d.total_used_ms for d in self.days)

    @property
    def busiest_day(self) -> Optional[DailyAggregate]:
        """Day with the most usage (earliest on ties), None for an idle week."""
        return _busiest(self.days)


@dataclass(frozen=True)
class MonthlyAggregate:
    """Usage of one app over a calendar month."""
    app_identifier: str
    month_start: date
    days: Tuple[DailyAggregate, ...]

    @property
    def month_key(self) -> str:
        """Month as "YYYY-MM"."""
        return self.month_start.strftime("%Y-%m")

    @property
    def total_used_ms(self) -> int:
        """Sum of the daily totals."""
        return sum(d.total_used_ms for d in self.days)

    @property
    def session_count(self) -> int:
        """Sessions counted across the month."""
        return sum(d.session_count for d in self.days)

    @property
    def active_days(self) -> int:
        """Days with any recorded usage."""
        return sum(1 for d in self.days if d.total_used_ms > 0)

    @property
    def average_daily_ms(self) -> int:
        """Mean usage per calendar day of the month."""
        return self.total_used_ms // len(self.days) if self.days else 0

    @property
    def busiest_day(self) -> Optional[DailyAggregate]:
        """Day with the most usage (earliest on ties), None for an idle month."""
        return _busiest(self.days)


def _busiest(days: Iterable[DailyAggregate]) -> Optional[DailyAggregate]:
    busiest = None
    for aggregate in days:
        if aggregate.total_used_ms == 0:
            continue
        if busiest is None or aggregate.total_used_ms > busiest.total_used_ms:
            busiest = aggregate
    return busiest


def clip_to_window(event: UsageEvent, window_start: int, window_end: int) -> int:
    """Milliseconds of a closed event falling inside ``[window_start, window_end)``.

    Sessions crossing midnight are split at the wall-clock boundary. Open
    sessions contribute nothing.
    """
    if event.end_timestamp is None:
        return 0
    start = max(event.start_timestamp, window_start)
    end = min(event.end_timestamp, window_end)
    return max(0, end - start)


def format_duration(duration_ms: int) -> str:
    """Format a duration for display: "1h 5m", "25m" or "40s"."""
    if duration_ms < 0:
        raise ValueError("duration_ms cannot be negative")
    hours, remainder = divmod(duration_ms, MS_PER_HOUR)
    minutes = remainder // MS_PER_MINUTE
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m"
    return f"{duration_ms // MS_PER_SECOND}s"


class AggregationEngine:
    """Computes and caches per-day usage totals for each app."""

    def __init__(self, repository: UsageRepository, tz: tzinfo):
        """Initialize the engine.

        Args:
            repository: Source of stored sessions
            tz: Time zone that defines calendar days
        """
        self.repository = repository
        self.tz = tz
        self._snapshots: Dict[Tuple[str, date], DailyAggregate] = {}
        self._lock = threading.Lock()
        # Bumped by invalidate_before; a recompute that spans a bump is not cached
        self._generation = 0

    def recompute(self, app_identifier: str, day: date) -> DailyAggregate:
        """Rebuild the aggregate of one app and day from stored sessions.

        Idempotent: with no intervening writes, repeated calls return equal
        aggregates. The only side effect is replacing the cached snapshot; a
        result read while invalidate_before ran is returned but not cached.
        """
        with self._lock:
            generation = self._generation
        window_start, window_end = day_bounds(day, self.tz)
        events = self.repository.query_events_between(app_identifier, window_start, window_end)

        total = 0
        sessions = 0
        for event in events:
            if event.is_open:
                continue
            total += clip_to_window(event, window_start, window_end)
            sessions += 1

        aggregate = DailyAggregate(
            app_identifier=app_identifier,
            day=day,
            total_used_ms=total,
            session_count=sessions
        )
        with self._lock:
            if generation == self._generation:
                self._snapshots[(app_identifier, day)] = aggregate
        logger.debug(f"Recomputed {app_identifier} on {day.isoformat()}: {total} ms")
        return aggregate

    def get_daily(self, app_identifier: str, day: date) -> DailyAggregate:
        """Cached aggregate for the app and day, recomputed on a miss."""
        with self._lock:
            cached = self._snapshots.get((app_identifier, day))
        if cached is not None:
            return cached
        return self.recompute(app_identifier, day)

    def invalidate(self, app_identifier: str, days: Iterable[date]) -> None:
        """Drop cached aggregates of one app for the given days only."""
        with self._lock:
            for day in days:
                self._snapshots.pop((app_identifier, day), None)

    def invalidate_before(self, day: date) -> None:
        """Drop every cached aggregate older than ``day``."""
        with self._lock:
            self._generation += 1
            stale = [key for key in self._snapshots if key[1] < day]
            for key in stale:
                del self._snapshots[key]
        if stale:
            logger.debug(f"Dropped {len(stale)} cached aggregates before {day.isoformat()}")

    def is_cached(self, app_identifier: str, day: date) -> bool:
        """Whether a snapshot for the app and day is held."""
        with self._lock:
            return (app_identifier, day) in self._snapshots

    def weekly(self, app_identifier: str, day: date) -> WeeklyAggregate:
        """Aggregate of the Monday-to-Sunday week containing ``day``."""
        monday = week_start(day)
        days = tuple(
            self.get_daily(app_identifier, monday + timedelta(days=offset))
            for offset in range(7)
        )
        return WeeklyAggregate(app_identifier=app_identifier, week_start=monday, days=days)

    def history(self, app_identifier: str, end_day: date, days: int) -> List[DailyAggregate]:
        """Daily aggregates for the ``days`` days ending at ``end_day``, oldest first."""
        if days <= 0:
            raise ValueError("days must be > 0")
        first = end_day - timedelta(days=days - 1)
        return [
            self.get_daily(app_identifier, first + timedelta(days=offset))
            for offset in range(days)
        ]

    def monthly(self, app_identifier: str, day: date) -> MonthlyAggregate:
        """Aggregate of the calendar month containing ``day``."""
        first = month_start(day)
        days = tuple(
            self.get_daily(app_identifier, first + timedelta(days=offset))
            for offset in range(days_in_month(first))
        )
        return MonthlyAggregate(app_identifier=app_identifier, month_start=first, days=days)
