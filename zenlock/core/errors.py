"""
Error taxonomy for the usage store and facade.

Every error is surfaced to the caller unchanged; nothing here is retried.
"""

from typing import Optional


class ZenLockError(Exception):
    """Base class for all ZenLock usage errors."""


class InvalidTimestamp(ZenLockError):
    """Raised when a timestamp is outside the accepted window."""
    def __init__(self, message: str, timestamp: int):
        super().__init__(message)
        self.timestamp = timestamp


class UnknownSession(ZenLockError):
    """Raised when a session id does not exist."""
    def __init__(self, session_id: int):
        super().__init__(f"Unknown session: {session_id}")
        self.session_id = session_id


class AlreadyClosed(ZenLockError):
    """Raised when ending a session that already has an end timestamp."""
    def __init__(self, session_id: int):
        super().__init__(f"Session {session_id} is already closed")
        self.session_id = session_id


class OverlappingSession(ZenLockError):
    """Raised when starting a session while one is still open for the app."""
    def __init__(self, app_identifier: str, open_session_id: Optional[int] = None):
        if open_session_id is None:
            message = f"App '{app_identifier}' already has an open session"
        else:
            message = (
                f"App '{app_identifier}' already has an open session "
                f"({open_session_id})"
            )
        super().__init__(message)
        self.app_identifier = app_identifier
        self.open_session_id = open_session_id


class StorageFailure(ZenLockError):
    """Raised when the local database cannot complete an operation.

    Fatal for the current operation only. The original sqlite3 error is
    chained as ``__cause__``.
    """
    def __init__(self, message: str, operation: str):
        super().__init__(message)
        self.operation = operation
