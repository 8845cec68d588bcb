"""
Unit tests for usage aggregation.

Tests day clipping, cache invalidation and weekly and monthly summaries.
"""

import os
import shutil
import tempfile
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from zenlock.core.aggregation import (
    AggregationEngine,
    DailyAggregate,
    clip_to_window,
    format_duration,
)
from zenlock.core.days import (
    day_bounds,
    days_in_month,
    days_spanned,
    month_start,
    previous_month,
    range_bounds,
    week_start,
)
from zenlock.storage.models import UsageEvent
from zenlock.storage.repository import UsageRepository, initialize_schema

MINUTE = 60_000


def ms(hour: int, minute: int = 0, day: int = 15) -> int:
    """Epoch ms for a UTC time in January 2024."""
    return int(datetime(2024, 1, day, hour, minute, tzinfo=timezone.utc).timestamp() * 1000)


class TestDayHelpers:
    """Test calendar-day arithmetic."""

    def test_day_bounds_utc(self):
        """A UTC day spans exactly 24 hours from midnight."""
        start, end = day_bounds(date(2024, 1, 15), timezone.utc)
        assert start == ms(0)
        assert end == ms(0, day=16)

    def test_day_bounds_dst_day_is_shorter(self):
        """The spring-forward day has 23 hours."""
        start, end = day_bounds(date(2024, 3, 10), ZoneInfo("America/New_York"))
        assert end - start == 23 * 60 * MINUTE

    def test_days_spanned(self):
        """A session crossing midnight touches both days."""
        assert days_spanned(ms(23, day=14), ms(1, day=15), timezone.utc) == [
            date(2024, 1, 14), date(2024, 1, 15)
        ]

    def test_week_start_is_monday(self):
        """Weeks start on Monday."""
        assert week_start(date(2024, 1, 17)) == date(2024, 1, 15)
        assert week_start(date(2024, 1, 15)) == date(2024, 1, 15)
        assert week_start(date(2024, 1, 21)) == date(2024, 1, 15)

    def test_month_helpers(self):
        """Month start, length and the previous month."""
        assert month_start(date(2024, 2, 17)) == date(2024, 2, 1)
        assert days_in_month(date(2024, 2, 17)) == 29
        assert days_in_month(date(2023, 2, 1)) == 28
        assert previous_month(date(2024, 1, 15)) == date(2023, 12, 1)
        assert previous_month(date(2024, 3, 31)) == date(2024, 2, 1)


class TestClipping:
    """Test clipping sessions to a window."""

    def test_event_inside_window(self):
        """A session fully inside counts entirely."""
        event = UsageEvent(1, "app", ms(9), ms(9, 30))
        assert clip_to_window(event, ms(0), ms(0, day=16)) == 30 * MINUTE

    def test_event_split_at_midnight(self):
        """A session crossing midnight is split by wall-clock boundary."""
        event = UsageEvent(1, "app", ms(23, 40, day=14), ms(0, 20))
        assert clip_to_window(event, ms(0, day=14), ms(0)) == 20 * MINUTE
        assert clip_to_window(event, ms(0), ms(0, day=16)) == 20 * MINUTE

    def test_open_event_contributes_nothing(self):
        """Open sessions are not counted."""
        event = UsageEvent(1, "app", ms(9))
        assert clip_to_window(event, ms(0), ms(0, day=16)) == 0

    def test_event_outside_window(self):
        """A session outside the window contributes zero."""
        event = UsageEvent(1, "app", ms(9, day=10), ms(10, day=10))
        assert clip_to_window(event, ms(0), ms(0, day=16)) == 0


class TestFormatDuration:
    """Test human-readable durations."""

    @pytest.mark.parametrize("duration_ms,expected", [
        (0, "0s"),
        (40_000, "40s"),
        (25 * MINUTE, "25m"),
        (65 * MINUTE, "1h 5m"),
        (120 * MINUTE, "2h 0m"),
    ])
    def test_format(self, duration_ms, expected):
        """Durations pick the largest sensible unit."""
        assert format_duration(duration_ms) == expected

    def test_negative_rejected(self):
        """Negative durations are invalid."""
        with pytest.raises(ValueError):
            format_duration(-1)


class TestAggregationEngine:
    """Test daily recomputation and caching."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repo = UsageRepository(self.db_path, clock=lambda: ms(23, 59, day=28))
        self.engine = AggregationEngine(self.repo, timezone.utc)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _record(self, app, start, end):
        session_id = self.repo.record_session_start(app, start)
        self.repo.record_session_end(session_id, end)

    def test_total_equals_sum_of_durations(self):
        """Non-overlapping sessions sum to their total duration."""
        sessions = [(ms(8), ms(8, 12)), (ms(9), ms(9, 30)), (ms(13, 5), ms(14, 50))]
        for start, end in sessions:
            self._record("com.example.chat", start, end)

        aggregate = self.engine.recompute("com.example.chat", date(2024, 1, 15))
        assert aggregate.total_used_ms == sum(end - start for start, end in sessions)
        assert aggregate.session_count == 3

    def test_midnight_session_split_between_days(self):
        """Each day only counts its side of midnight."""
        self._record("com.example.chat", ms(23, 30, day=14), ms(0, 45))

        assert self.engine.recompute("com.example.chat", date(2024, 1, 14)).total_used_ms == 30 * MINUTE
        assert self.engine.recompute("com.example.chat", date(2024, 1, 15)).total_used_ms == 45 * MINUTE

    def test_open_session_not_counted(self):
        """An open session does not add to the total."""
        self._record("com.example.chat", ms(8), ms(8, 10))
        self.repo.record_session_start("com.example.chat", ms(9))

        aggregate = self.engine.recompute("com.example.chat", date(2024, 1, 15))
        assert aggregate.total_used_ms == 10 * MINUTE
        assert aggregate.session_count == 1

    def test_recompute_is_idempotent(self):
        """Two recomputes with no writes in between are equal."""
        self._record("com.example.chat", ms(9), ms(9, 30))
        first = self.engine.recompute("com.example.chat", date(2024, 1, 15))
        second = self.engine.recompute("com.example.chat", date(2024, 1, 15))
        assert first == second

    def test_empty_day(self):
        """A day with no sessions has zero usage."""
        assert self.engine.recompute("com.example.chat", date(2024, 1, 15)) == DailyAggregate(
            "com.example.chat", date(2024, 1, 15), 0, 0
        )

    def test_get_daily_uses_cache_until_invalidated(self):
        """Cached snapshots are served until their key is invalidated."""
        self._record("com.example.chat", ms(9), ms(9, 30))
        cached = self.engine.get_daily("com.example.chat", date(2024, 1, 15))

        self._record("com.example.chat", ms(10), ms(10, 30))
        assert self.engine.get_daily("com.example.chat", date(2024, 1, 15)) is cached

        self.engine.invalidate("com.example.chat", [date(2024, 1, 15)])
        assert self.engine.get_daily("com.example.chat", date(2024, 1, 15)).total_used_ms == 60 * MINUTE

    def test_invalidate_only_touches_given_app_and_days(self):
        """Invalidation is scoped to one app and the listed days."""
        for app in ("com.a", "com.b"):
            self.engine.get_daily(app, date(2024, 1, 14))
            self.engine.get_daily(app, date(2024, 1, 15))

        self.engine.invalidate("com.a", [date(2024, 1, 15)])

        assert not self.engine.is_cached("com.a", date(2024, 1, 15))
        assert self.engine.is_cached("com.a", date(2024, 1, 14))
        assert self.engine.is_cached("com.b", date(2024, 1, 15))

    def test_invalidate_before(self):
        """Old snapshots are dropped, recent ones kept."""
        self.engine.get_daily("com.a", date(2024, 1, 10))
        self.engine.get_daily("com.a", date(2024, 1, 15))
        self.engine.invalidate_before(date(2024, 1, 12))
        assert not self.engine.is_cached("com.a", date(2024, 1, 10))
        assert self.engine.is_cached("com.a", date(2024, 1, 15))

    def test_weekly_summary(self):
        """Weekly totals add up the seven days from Monday."""
        self._record("com.example.chat", ms(9, day=15), ms(9, 30, day=15))
        self._record("com.example.chat", ms(9, day=17), ms(10, 15, day=17))
        self._record("com.example.chat", ms(9, day=22), ms(10, day=22))  # next week

        weekly = self.engine.weekly("com.example.chat", date(2024, 1, 18))

        assert weekly.week_start == date(2024, 1, 15)
        assert len(weekly.days) == 7
        assert weekly.total_used_ms == 105 * MINUTE
        assert weekly.busiest_day.day == date(2024, 1, 17)

    def test_idle_week_has_no_busiest_day(self):
        """An idle week reports no busiest day."""
        weekly = self.engine.weekly("com.example.chat", date(2024, 1, 18))
        assert weekly.total_used_ms == 0
        assert weekly.busiest_day is None

    def test_history_oldest_first(self):
        """History returns one aggregate per day ending at end_day."""
        self._record("com.example.chat", ms(9, day=13), ms(9, 20, day=13))
        history = self.engine.history("com.example.chat", date(2024, 1, 15), 3)
        assert [a.day for a in history] == [date(2024, 1, 13), date(2024, 1, 14), date(2024, 1, 15)]
        assert [a.total_used_ms for a in history] == [20 * MINUTE, 0, 0]

    def test_history_requires_positive_days(self):
        """History length must be positive."""
        with pytest.raises(ValueError):
            self.engine.history("com.example.chat", date(2024, 1, 15), 0)

    def test_read_overlapping_purge_is_not_cached(self, monkeypatch):
        """A snapshot read while old sessions are purged is not kept."""
        app = "com.example.chat"
        self._record(app, ms(9, day=10), ms(10, day=10))
        real_query = self.repo.query_events_between

        def query_then_purge(*args):
            events = real_query(*args)
            self.repo.purge_events_before(ms(0, day=12))
            self.engine.invalidate_before(date(2024, 1, 12))
            return events

        monkeypatch.setattr(self.repo, "query_events_between", query_then_purge)

        assert self.engine.get_daily(app, date(2024, 1, 10)).total_used_ms == 60 * MINUTE
        assert not self.engine.is_cached(app, date(2024, 1, 10))
        assert self.engine.get_daily(app, date(2024, 1, 10)).total_used_ms == 0

    def test_monthly_summary(self):
        """Monthly totals cover every calendar day of the month."""
        self._record("com.example.chat", ms(9, day=3), ms(9, 30, day=3))
        self._record("com.example.chat", ms(9, day=17), ms(10, 15, day=17))
        self._record("com.example.chat", ms(23, 50, day=28), ms(23, 55, day=28))

        monthly = self.engine.monthly("com.example.chat", date(2024, 1, 20))

        assert monthly.month_start == date(2024, 1, 1)
        assert monthly.month_key == "2024-01"
        assert len(monthly.days) == 31
        assert monthly.total_used_ms == 110 * MINUTE
        assert monthly.session_count == 3
        assert monthly.active_days == 3
        assert monthly.average_daily_ms == 110 * MINUTE // 31
        assert monthly.busiest_day.day == date(2024, 1, 17)

    def test_idle_month(self):
        """An idle month has no busiest day and no active days."""
        monthly = self.engine.monthly("com.example.chat", date(2024, 1, 20))
        assert monthly.total_used_ms == 0
        assert monthly.active_days == 0
        assert monthly.busiest_day is None


class TestMonthlyAcrossDst:
    """Test monthly totals in a zone with a DST change."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(db_path)
        self.tz = ZoneInfo("America/New_York")
        self.repo = UsageRepository(db_path, clock=lambda: self.local_ms(4, 1, 12))
        self.engine = AggregationEngine(self.repo, self.tz)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def local_ms(self, month: int, day: int, hour: int, minute: int = 0) -> int:
        return int(datetime(2024, month, day, hour, minute, tzinfo=self.tz).timestamp() * 1000)

    def _record(self, start, end):
        session_id = self.repo.record_session_start("com.example.chat", start)
        self.repo.record_session_end(session_id, end)

    def test_month_days_cover_the_short_month(self):
        """March 2024 in New York is one hour short of 31 full days."""
        start, end = range_bounds(date(2024, 3, 1), date(2024, 3, 31), self.tz)
        assert end - start == (31 * 24 - 1) * 60 * MINUTE

    def test_monthly_total_across_spring_forward(self):
        """Sessions around the DST change count elapsed time only."""
        # 01:30 to 03:30 local on the spring-forward night is one real hour
        self._record(self.local_ms(3, 10, 1, 30), self.local_ms(3, 10, 3, 30))
        # Crosses the midnight before the change
        self._record(self.local_ms(3, 9, 23, 30), self.local_ms(3, 10, 0, 30))

        monthly = self.engine.monthly("com.example.chat", date(2024, 3, 20))

        assert len(monthly.days) == 31
        assert monthly.total_used_ms == 120 * MINUTE
        by_day = {d.day: d.total_used_ms for d in monthly.days}
        assert by_day[date(2024, 3, 9)] == 30 * MINUTE
        assert by_day[date(2024, 3, 10)] == 90 * MINUTE
        assert monthly.busiest_day.day == date(2024, 3, 10)
