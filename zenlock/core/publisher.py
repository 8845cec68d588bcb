"""
Observable quota state.

Keeps the latest QuotaStatus per app and pushes changes to subscribers
through per-subscription mailboxes, so a slow subscriber never holds up the
writer that produced the change.
"""

import logging
import threading
from collections import OrderedDict
from typing import Callable, Dict, Iterator, List, Optional, Set

from .quota import QuotaStatus

logger = logging.getLogger("zenlock")

# Subscription key matching every app
ALL_APPS = "*"


class Subscription:
    """Mailbox receiving quota updates for one app or for all apps.

    Holds at most one pending status per app. When a newer status for the
    same app arrives before the previous one was taken, the older one is
    dropped (last value wins). Statuses of one app are always taken in the
    order they were computed.
    """

    def __init__(self, key: str):
        self.key = key
        self._pending: "OrderedDict[str, QuotaStatus]" = OrderedDict()
        self._condition = threading.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        """Whether the subscription stopped accepting updates."""
        return self._closed

    def matches(self, app_identifier: str) -> bool:
        """Whether updates for the app belong in this mailbox."""
        return self.key == ALL_APPS or self.key == app_identifier

    def offer(self, status: QuotaStatus) -> None:
        """Queue a status without blocking, replacing any pending one for the app."""
        with self._condition:
            if self._closed:
                return
            self._pending.pop(status.app_identifier, None)
            self._pending[status.app_identifier] = status
            self._condition.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[QuotaStatus]:
        """Take the next pending status.

        Blocks until a status is available, the subscription is closed, or
        ``timeout`` seconds pass. Returns None when nothing arrived.
        """
        with self._condition:
            self._condition.wait_for(lambda: self._pending or self._closed, timeout)
            if not self._pending:
                return None
            _, status = self._pending.popitem(last=False)
            return status

    def drain(self) -> List[QuotaStatus]:
        """Take every pending status without waiting."""
        with self._condition:
            statuses = list(self._pending.values())
            self._pending.clear()
            return statuses

    def close(self) -> None:
        """Stop accepting updates and wake any waiting reader."""
        with self._condition:
            self._closed = True
            self._condition.notify_all()

    def __iter__(self) -> Iterator[QuotaStatus]:
        while True:
            status = self.get()
            if status is None:
                return
            yield status


class StatePublisher:
    """Current QuotaStatus per app plus the subscriptions watching them."""

    def __init__(self):
        self._statuses: Dict[str, QuotaStatus] = {}
        self._subscriptions: Set[Subscription] = set()
        self._lock = threading.Lock()

    def update(self, status: QuotaStatus) -> None:
        """Replace the app's status and deliver it to matching subscribers."""
        with self._lock:
            self._statuses[status.app_identifier] = status
            targets = [s for s in self._subscriptions if s.matches(status.app_identifier)]
        for subscription in targets:
            subscription.offer(status)
        logger.debug(
            f"Published status for {status.app_identifier} to {len(targets)} subscribers "
            f"(used {status.used_ms} of {status.limit_ms} ms)"
        )

    def get(self, app_identifier: str) -> Optional[QuotaStatus]:
        with self._lock:
            return self._statuses.get(app_identifier)

    def snapshot(self) -> Dict[str, QuotaStatus]:
        """Copy of the current app-to-status map."""
        with self._lock:
            return dict(self._statuses)

    def subscribe(
        self,
        key: str = ALL_APPS,
        callback: Optional[Callable[[QuotaStatus], None]] = None
    ) -> Subscription:
        """Register for updates of one app, or of every app with ``ALL_APPS``.

        Without a callback the caller reads from the returned Subscription.
        With one, a daemon thread drains the mailbox and invokes the
        callback for each status until the subscription is closed.
        """
        if not key:
            raise ValueError("subscription key cannot be empty")
        subscription = Subscription(key)
        with self._lock:
            self._subscriptions.add(subscription)
        if callback is not None:
            thread = threading.Thread(
                target=_dispatch,
                args=(subscription, callback),
                name=f"zenlock-dispatch-{key}",
                daemon=True
            )
            thread.start()
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove and close a subscription. Unknown subscriptions are ignored."""
        with self._lock:
            self._subscriptions.discard(subscription)
        subscription.close()

    def close(self) -> None:
        """Close every subscription."""
        with self._lock:
            subscriptions = list(self._subscriptions)
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.close()


def _dispatch(subscription: Subscription, callback: Callable[[QuotaStatus], None]) -> None:
    for status in subscription:
        try:
            callback(status)
        except Exception:
            logger.exception(
                f"Subscriber callback for '{subscription.key}' failed on {status.app_identifier}"
            )
