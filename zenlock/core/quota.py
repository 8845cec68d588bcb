"""
Quota status derivation.

Turns a day's usage and an app's configured limit into the status that
enforcement hooks and the UI act on.
"""

from dataclasses import dataclass
from datetime import date

from zenlock.storage.models import AppLimit


@dataclass(frozen=True)
class QuotaStatus:
    """Live quota state of one app for one day.

    Never persisted; rebuilt from stored sessions and limits on restart.
    """
    app_identifier: str
    day: date
    used_ms: int
    limit_ms: int
    remaining_ms: int
    enabled: bool
    is_exceeded: bool

    def __post_init__(self):
        """Validate the status respects the quota invariants."""
        if self.remaining_ms != max(0, self.limit_ms - self.used_ms):
            raise ValueError("remaining_ms must equal max(0, limit_ms - used_ms)")
        if self.is_exceeded != (self.enabled and self.used_ms >= self.limit_ms):
            raise ValueError("is_exceeded must equal enabled and used_ms >= limit_ms")


def compute_quota_status(limit: AppLimit, used_ms: int, day: date) -> QuotaStatus:
    """Derive the quota status of an app.

    A disabled limit is never exceeded, though remaining time is still
    reported against it.

    Args:
        limit: The app's configured limit
        used_ms: Usage counted for ``day``
        day: Calendar day the usage belongs to

    Returns:
        QuotaStatus for the app and day
    """
    if used_ms < 0:
        raise ValueError("used_ms cannot be negative")
    return QuotaStatus(
        app_identifier=limit.app_identifier,
        day=day,
        used_ms=used_ms,
        limit_ms=limit.daily_limit_ms,
        remaining_ms=max(0, limit.daily_limit_ms - used_ms),
        enabled=limit.enabled,
        is_exceeded=limit.enabled and used_ms >= limit.daily_limit_ms
    )
