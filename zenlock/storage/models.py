"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class UsageEvent:
    """Record of one foreground session of a tracked app.

    Created open (no end timestamp) when the app comes to the foreground and
    closed once when it leaves. A closed event is never modified again.
    """
    session_id: int
    app_identifier: str
    start_timestamp: int  # epoch ms
    end_timestamp: Optional[int] = None  # epoch ms, None while open

    @property
    def is_open(self) -> bool:
        """True until the session has been ended."""
        return self.end_timestamp is None

    @property
    def duration_ms(self) -> Optional[int]:
        """Session length in milliseconds, None while open."""
        if self.end_timestamp is None:
            return None
        return self.end_timestamp - self.start_timestamp


@dataclass(frozen=True)
class AppLimit:
    """Configured daily allowance for one app."""
    app_identifier: str
    daily_limit_ms: int
    enabled: bool = True

    def __post_init__(self):
        """Validate the limit is usable."""
        if not self.app_identifier:
            raise ValueError("app_identifier cannot be empty")
        if self.daily_limit_ms < 0:
            raise ValueError("daily_limit_ms cannot be negative")
