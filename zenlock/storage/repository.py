"""
Repository pattern for data access.

Handles database operations and data persistence logic.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, tzinfo
from typing import Callable, Iterator, List, Optional, Tuple

from zenlock.core.days import now_millis, range_bounds
from zenlock.core.errors import (
    AlreadyClosed,
    InvalidTimestamp,
    OverlappingSession,
    StorageFailure,
    UnknownSession,
)
from .db import DEFAULT_DB_PATH, get_connection, write_transaction
from .models import AppLimit, UsageEvent

logger = logging.getLogger("zenlock")

# 2000-01-01T00:00:00Z; nothing older is a plausible device timestamp
DEFAULT_EPOCH_FLOOR_MS = 946_684_800_000
DEFAULT_CLOCK_SKEW_TOLERANCE_MS = 5_000

_EVENT_COLUMNS = "id, app_identifier, start_timestamp, end_timestamp"


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    """Surface any sqlite3 error as a StorageFailure for ``operation``."""
    try:
        yield
    except sqlite3.Error as e:
        logger.error(f"Storage failure during {operation}: {e}")
        raise StorageFailure(f"Storage failure during {operation}: {e}", operation) from e


def _row_to_event(row: Tuple) -> UsageEvent:
    return UsageEvent(
        session_id=row[0],
        app_identifier=row[1],
        start_timestamp=row[2],
        end_timestamp=row[3]
    )


def _row_to_limit(row: Tuple) -> AppLimit:
    return AppLimit(
        app_identifier=row[0],
        daily_limit_ms=row[1],
        enabled=bool(row[2])
    )


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage_event and app_limit tables if they don't exist.

    usage_event holds one row per app session. The partial unique index
    allows at most one open session (NULL end_timestamp) per app.

    Args:
        db_path: Path to SQLite database file
    """
    with _storage_errors("initialize schema"):
        conn = get_connection(db_path)
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS usage_event (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    app_identifier TEXT NOT NULL,
                    start_timestamp INTEGER NOT NULL,
                    end_timestamp INTEGER
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_usage_event_app_start
                ON usage_event (app_identifier, start_timestamp)
            """)
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_usage_event_open
                ON usage_event (app_identifier)
                WHERE end_timestamp IS NULL
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS app_limit (
                    app_identifier TEXT PRIMARY KEY,
                    daily_limit_ms INTEGER NOT NULL,
                    enabled INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)
            conn.commit()
        finally:
            conn.close()


class UsageRepository:
    """Repository for app sessions and per-app limits.

    Each mutating call is a single transaction: it either fully applies or
    leaves the database untouched. Storage problems surface as
    StorageFailure and are never retried here.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        epoch_floor_ms: int = DEFAULT_EPOCH_FLOOR_MS,
        clock_skew_tolerance_ms: int = DEFAULT_CLOCK_SKEW_TOLERANCE_MS,
        clock: Optional[Callable[[], int]] = None
    ):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
            epoch_floor_ms: Earliest accepted session timestamp
            clock_skew_tolerance_ms: How far in the future a timestamp may be
            clock: Returns the current time in epoch ms (defaults to wall clock)
        """
        if clock_skew_tolerance_ms < 0:
            raise ValueError("clock_skew_tolerance_ms cannot be negative")
        self.db_path = db_path
        self.epoch_floor_ms = epoch_floor_ms
        self.clock_skew_tolerance_ms = clock_skew_tolerance_ms
        self.clock = clock or now_millis

    def _check_not_future(self, timestamp: int) -> None:
        latest = self.clock() + self.clock_skew_tolerance_ms
        if timestamp > latest:
            raise InvalidTimestamp(
                f"Timestamp {timestamp} is in the future (latest accepted: {latest})",
                timestamp
            )

    # Sessions

    def record_session_start(self, app_identifier: str, timestamp: int) -> int:
        """Open a new session for an app.

        Args:
            app_identifier: App the session belongs to
            timestamp: Session start in epoch ms

        Returns:
            The new session id

        Raises:
            InvalidTimestamp: If timestamp is before the epoch floor or too far in the future
            OverlappingSession: If the app already has an open session
            StorageFailure: If the database operation fails
        """
        if not app_identifier:
            raise ValueError("app_identifier cannot be empty")
        if timestamp < self.epoch_floor_ms:
            raise InvalidTimestamp(
                f"Timestamp {timestamp} is before the epoch floor {self.epoch_floor_ms}",
                timestamp
            )
        self._check_not_future(timestamp)

        with _storage_errors("record session start"):
            with write_transaction(self.db_path) as conn:
                row = conn.execute(
                    "SELECT id FROM usage_event WHERE app_identifier = ? AND end_timestamp IS NULL",
                    (app_identifier,)
                ).fetchone()
                if row is not None:
                    logger.warning(
                        f"Rejected session start for {app_identifier}: session {row[0]} still open"
                    )
                    raise OverlappingSession(app_identifier, row[0])
                try:
                    cursor = conn.execute(
                        "INSERT INTO usage_event (app_identifier, start_timestamp) VALUES (?, ?)",
                        (app_identifier, timestamp)
                    )
                except sqlite3.IntegrityError as e:
                    raise OverlappingSession(app_identifier) from e
                session_id = cursor.lastrowid

        logger.info(f"Session {session_id} started for {app_identifier} at {timestamp}")
        return session_id

    def record_session_end(self, session_id: int, timestamp: int) -> UsageEvent:
        """Close an open session.

        Args:
            session_id: Session returned by record_session_start
            timestamp: Session end in epoch ms

        Returns:
            The closed UsageEvent

        Raises:
            UnknownSession: If no session has this id
            AlreadyClosed: If the session already ended
            InvalidTimestamp: If timestamp precedes the session start or is too far in the future
            StorageFailure: If the database operation fails
        """
        with _storage_errors("record session end"):
            with write_transaction(self.db_path) as conn:
                row = conn.execute(
                    f"SELECT {_EVENT_COLUMNS} FROM usage_event WHERE id = ?",
                    (session_id,)
                ).fetchone()
                if row is None:
                    raise UnknownSession(session_id)
                event = _row_to_event(row)
                if not event.is_open:
                    raise AlreadyClosed(session_id)
                if timestamp < event.start_timestamp:
                    raise InvalidTimestamp(
                        f"End {timestamp} precedes start {event.start_timestamp} "
                        f"of session {session_id}",
                        timestamp
                    )
                self._check_not_future(timestamp)
                conn.execute(
                    "UPDATE usage_event SET end_timestamp = ? WHERE id = ? AND end_timestamp IS NULL",
                    (timestamp, session_id)
                )

        closed = replace(event, end_timestamp=timestamp)
        logger.info(
            f"Session {session_id} for {closed.app_identifier} closed after {closed.duration_ms} ms"
        )
        return closed

    def get_event(self, session_id: int) -> UsageEvent:
        """Fetch one session by id.

        Raises:
            UnknownSession: If no session has this id
        """
        with _storage_errors("get event"):
            conn = get_connection(self.db_path)
            try:
                row = conn.execute(
                    f"SELECT {_EVENT_COLUMNS} FROM usage_event WHERE id = ?",
                    (session_id,)
                ).fetchone()
            finally:
                conn.close()
        if row is None:
            raise UnknownSession(session_id)
        return _row_to_event(row)

    def get_open_session(self, app_identifier: str) -> Optional[UsageEvent]:
        """Return the app's open session, if any."""
        with _storage_errors("get open session"):
            conn = get_connection(self.db_path)
            try:
                row = conn.execute(
                    f"SELECT {_EVENT_COLUMNS} FROM usage_event "
                    "WHERE app_identifier = ? AND end_timestamp IS NULL",
                    (app_identifier,)
                ).fetchone()
            finally:
                conn.close()
        return _row_to_event(row) if row is not None else None

    def query_events_between(
        self,
        app_identifier: str,
        start_timestamp: int,
        end_timestamp: int
    ) -> List[UsageEvent]:
        """Events of an app overlapping ``[start_timestamp, end_timestamp)``.

        Open sessions are included when they started before the window end.

        Returns:
            Events ordered by start timestamp (oldest first)
        """
        with _storage_errors("query events"):
            conn = get_connection(self.db_path)
            try:
                cursor = conn.execute(
                    f"""
                    SELECT {_EVENT_COLUMNS} FROM usage_event
                    WHERE app_identifier = ?
                      AND start_timestamp < ?
                      AND (end_timestamp IS NULL OR end_timestamp > ? OR start_timestamp >= ?)
                    ORDER BY start_timestamp ASC, id ASC
                    """,
                    (app_identifier, end_timestamp, start_timestamp, start_timestamp)
                )
                return [_row_to_event(row) for row in cursor.fetchall()]
            finally:
                conn.close()

    def query_events(
        self,
        app_identifier: str,
        day_range: Tuple[date, date],
        tz: tzinfo
    ) -> List[UsageEvent]:
        """Events of an app overlapping an inclusive range of calendar days.

        Args:
            app_identifier: App to query
            day_range: (first_day, last_day), both inclusive
            tz: Time zone the days are defined in

        Returns:
            Events ordered by start timestamp (oldest first)
        """
        first_day, last_day = day_range
        start, end = range_bounds(first_day, last_day, tz)
        return self.query_events_between(app_identifier, start, end)

    def purge_events_before(self, cutoff_timestamp: int) -> int:
        """Delete closed sessions that ended before the cutoff.

        Open sessions are never purged.

        Returns:
            Number of deleted sessions
        """
        with _storage_errors("purge events"):
            with write_transaction(self.db_path) as conn:
                cursor = conn.execute(
                    "DELETE FROM usage_event WHERE end_timestamp IS NOT NULL AND end_timestamp < ?",
                    (cutoff_timestamp,)
                )
                deleted = cursor.rowcount
        logger.info(f"Purged {deleted} sessions that ended before {cutoff_timestamp}")
        return deleted

    # Limits

    def set_limit(self, app_identifier: str, daily_limit_ms: int, enabled: bool) -> AppLimit:
        """Create or replace the daily limit of an app.

        Raises:
            ValueError: If the limit is negative or the app identifier empty
            StorageFailure: If the database operation fails
        """
        limit = AppLimit(
            app_identifier=app_identifier,
            daily_limit_ms=int(daily_limit_ms),
            enabled=bool(enabled)
        )
        with _storage_errors("set limit"):
            with write_transaction(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO app_limit (app_identifier, daily_limit_ms, enabled, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT (app_identifier) DO UPDATE SET
                        daily_limit_ms = excluded.daily_limit_ms,
                        enabled = excluded.enabled,
                        updated_at = excluded.updated_at
                    """,
                    (limit.app_identifier, limit.daily_limit_ms, int(limit.enabled), self.clock())
                )
        logger.info(
            f"Limit for {app_identifier} set to {limit.daily_limit_ms} ms "
            f"({'enabled' if limit.enabled else 'disabled'})"
        )
        return limit

    def get_limit(self, app_identifier: str) -> Optional[AppLimit]:
        """Return the configured limit of an app, if any."""
        with _storage_errors("get limit"):
            conn = get_connection(self.db_path)
            try:
                row = conn.execute(
                    "SELECT app_identifier, daily_limit_ms, enabled FROM app_limit "
                    "WHERE app_identifier = ?",
                    (app_identifier,)
                ).fetchone()
            finally:
                conn.close()
        return _row_to_limit(row) if row is not None else None

    def list_limits(self) -> List[AppLimit]:
        """Return every configured limit, ordered by app identifier."""
        with _storage_errors("list limits"):
            conn = get_connection(self.db_path)
            try:
                cursor = conn.execute(
                    "SELECT app_identifier, daily_limit_ms, enabled FROM app_limit "
                    "ORDER BY app_identifier"
                )
                return [_row_to_limit(row) for row in cursor.fetchall()]
            finally:
                conn.close()
