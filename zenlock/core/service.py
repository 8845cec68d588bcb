"""
Usage service facade.

The single entry point for enforcement hooks, settings screens and UI
code. Writes are applied, aggregated and published before they return, so
a caller reading right after a write always sees the post-write state.
"""

import logging
import threading
from datetime import date, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from zenlock.config.loader import Settings
from zenlock.core.aggregation import (
    AggregationEngine,
    DailyAggregate,
    MonthlyAggregate,
    WeeklyAggregate,
)
from zenlock.core.days import day_bounds, day_of, days_spanned, now_millis, resolve_timezone
from zenlock.core.publisher import ALL_APPS, StatePublisher, Subscription
from zenlock.core.quota import QuotaStatus, compute_quota_status
from zenlock.storage.models import AppLimit, UsageEvent
from zenlock.storage.repository import UsageRepository, initialize_schema

logger = logging.getLogger("zenlock")


class UsageService:
    """Facade over the usage store, aggregation engine and state publisher.

    All writes for one app are serialized on a per-app lock. Reads of that
    app through this facade take the same lock, so they observe either the
    state before a write or after it, never in between. Different apps
    proceed independently.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], int]] = None
    ):
        """Open the store and rebuild live quota state from it.

        Args:
            db_path: SQLite file; defaults to the configured storage path
            settings: Configuration (defaults apply when omitted)
            clock: Returns the current time in epoch ms (defaults to wall clock)
        """
        self.settings = settings or Settings()
        self.db_path = db_path or self.settings.storage.db_path
        self.clock = clock or now_millis
        self.tz = resolve_timezone(self.settings.timezone)

        initialize_schema(self.db_path)
        self.repository = UsageRepository(
            db_path=self.db_path,
            epoch_floor_ms=self.settings.timestamps.epoch_floor_ms,
            clock_skew_tolerance_ms=self.settings.timestamps.clock_skew_tolerance_ms,
            clock=self.clock
        )
        self.engine = AggregationEngine(self.repository, self.tz)
        self.publisher = StatePublisher()

        self._app_locks: Dict[str, threading.Lock] = {}
        self._app_locks_guard = threading.Lock()

        self.rebuild()

    def __enter__(self) -> "UsageService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """Close every subscription."""
        self.publisher.close()

    def today(self) -> date:
        """Current calendar day in the configured time zone."""
        return day_of(self.clock(), self.tz)

    def _lock_for(self, app_identifier: str) -> threading.Lock:
        with self._app_locks_guard:
            lock = self._app_locks.get(app_identifier)
            if lock is None:
                lock = threading.Lock()
                self._app_locks[app_identifier] = lock
            return lock

    def _refresh_status(self, app_identifier: str, limit: Optional[AppLimit] = None) -> Optional[QuotaStatus]:
        # Caller holds the app lock
        if limit is None:
            limit = self.repository.get_limit(app_identifier)
        if limit is None:
            return None
        today = self.today()
        used = self.engine.get_daily(app_identifier, today).total_used_ms
        status = compute_quota_status(limit, used, today)
        self.publisher.update(status)
        return status

    def rebuild(self) -> None:
        """Recompute every app's quota status from persisted data."""
        limits = self.repository.list_limits()
        for limit in limits:
            with self._lock_for(limit.app_identifier):
                self._refresh_status(limit.app_identifier, limit)
        logger.info(f"Rebuilt quota state for {len(limits)} apps")

    # Writes

    def record_session_start(self, app_identifier: str, timestamp: Optional[int] = None) -> int:
        """Open a session for an app (now when ``timestamp`` is omitted).

        Returns:
            The new session id
        """
        if timestamp is None:
            timestamp = self.clock()
        with self._lock_for(app_identifier):
            session_id = self.repository.record_session_start(app_identifier, timestamp)
            self.engine.invalidate(app_identifier, [day_of(timestamp, self.tz)])
            self._refresh_status(app_identifier)
        return session_id

    def record_session_end(self, session_id: int, timestamp: Optional[int] = None) -> UsageEvent:
        """Close a session and publish the app's updated quota status.

        Returns:
            The closed UsageEvent
        """
        if timestamp is None:
            timestamp = self.clock()
        app_identifier = self.repository.get_event(session_id).app_identifier
        with self._lock_for(app_identifier):
            closed = self.repository.record_session_end(session_id, timestamp)
            affected = days_spanned(closed.start_timestamp, closed.end_timestamp, self.tz)
            self.engine.invalidate(app_identifier, affected)
            for day in affected:
                self.engine.recompute(app_identifier, day)
            self._refresh_status(app_identifier)
        return closed

    def set_limit(self, app_identifier: str, daily_limit_ms: int, enabled: bool = True) -> QuotaStatus:
        """Create or replace an app's daily limit.

        Returns:
            The app's quota status under the new limit
        """
        with self._lock_for(app_identifier):
            limit = self.repository.set_limit(app_identifier, daily_limit_ms, enabled)
            self.engine.invalidate(app_identifier, [self.today()])
            return self._refresh_status(app_identifier, limit)

    def purge_expired(self) -> int:
        """Delete sessions older than the configured retention period.

        Returns:
            Number of deleted sessions
        """
        cutoff_day = self.today() - timedelta(days=self.settings.storage.retention_days)
        cutoff, _ = day_bounds(cutoff_day, self.tz)
        deleted = self.repository.purge_events_before(cutoff)
        # After the delete, so reads that overlapped it are not cached
        self.engine.invalidate_before(cutoff_day)
        return deleted

    # Reads

    def query_events(self, app_identifier: str, day_range: Tuple[date, date]) -> List[UsageEvent]:
        """Sessions of an app overlapping an inclusive range of days, oldest first."""
        with self._lock_for(app_identifier):
            return self.repository.query_events(app_identifier, day_range, self.tz)

    def get_open_session(self, app_identifier: str) -> Optional[UsageEvent]:
        with self._lock_for(app_identifier):
            return self.repository.get_open_session(app_identifier)

    def get_daily_usage(self, app_identifier: str, day: Optional[date] = None) -> DailyAggregate:
        """Usage of an app on ``day`` (today by default)."""
        with self._lock_for(app_identifier):
            return self.engine.get_daily(app_identifier, day or self.today())

    def get_weekly_usage(self, app_identifier: str, day: Optional[date] = None) -> WeeklyAggregate:
        """Usage of an app over the week containing ``day`` (this week by default)."""
        with self._lock_for(app_identifier):
            return self.engine.weekly(app_identifier, day or self.today())

    def get_monthly_usage(self, app_identifier: str, day: Optional[date] = None) -> MonthlyAggregate:
        """Usage of an app over the calendar month containing ``day`` (this month by default)."""
        with self._lock_for(app_identifier):
            return self.engine.monthly(app_identifier, day or self.today())

    def get_usage_history(self, app_identifier: str, days: int = 7) -> List[DailyAggregate]:
        """Daily usage for the last ``days`` days including today, oldest first."""
        with self._lock_for(app_identifier):
            return self.engine.history(app_identifier, self.today(), days)

    def get_limit(self, app_identifier: str) -> Optional[AppLimit]:
        """Stored limit of an app, None when it has none."""
        return self.repository.get_limit(app_identifier)

    def list_limits(self) -> List[AppLimit]:
        """Every stored limit, ordered by app identifier."""
        return self.repository.list_limits()

    def get_quota_status(self, app_identifier: str) -> Optional[QuotaStatus]:
        """Live quota status of an app, None when it has no limit.

        A status computed on an earlier day is refreshed first.
        """
        with self._lock_for(app_identifier):
            status = self.publisher.get(app_identifier)
            if status is not None and status.day != self.today():
                status = self._refresh_status(app_identifier)
            return status

    def get_all_quota_statuses(self) -> Dict[str, QuotaStatus]:
        """Live quota status of every app with a limit."""
        today = self.today()
        for app_identifier, status in self.publisher.snapshot().items():
            if status.day != today:
                with self._lock_for(app_identifier):
                    self._refresh_status(app_identifier)
        return self.publisher.snapshot()

    # Subscriptions

    def subscribe(
        self,
        app_identifier: str = ALL_APPS,
        callback: Optional[Callable[[QuotaStatus], None]] = None
    ) -> Subscription:
        """Receive quota updates for one app, or every app with ``ALL_APPS``."""
        return self.publisher.subscribe(app_identifier, callback)

    def unsubscribe(self, subscription: Subscription) -> None:
        """Stop and close a subscription."""
        self.publisher.unsubscribe(subscription)
