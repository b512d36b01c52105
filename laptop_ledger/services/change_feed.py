from __future__ import annotations

import itertools
import logging
import threading
from typing import Any, Callable

FEED_LOGGER = logging.getLogger("laptop_ledger.feed")

ITEMS_COLLECTION = "items"
LOAN_EVENTS_COLLECTION = "loanEvents"


class Subscription:
    """A live query: ``fetch`` is re-run and its full result set delivered after every change."""

    def __init__(
        self,
        feed: "ChangeFeed",
        collection: str,
        fetch: Callable[[], Any],
        on_change: Callable[[Any], None],
        on_error: Callable[[Exception], None] | None = None,
    ):
        self.feed = feed
        self.collection = collection
        self.fetch = fetch
        self.on_change = on_change
        self.on_error = on_error
        self.active = True
        self.failures = 0

    def refresh(self) -> bool:
        if not self.active:
            return False
        try:
            snapshot = self.fetch()
        except Exception as exc:
            self.failures += 1
            FEED_LOGGER.warning(
                "Feed delivery failed collection=%s failures=%s error=%s",
                self.collection,
                self.failures,
                exc,
            )
            if self.on_error is not None:
                self.on_error(exc)
            return False
        self.failures = 0
        self.on_change(snapshot)
        return True

    def unsubscribe(self) -> None:
        self.active = False
        self.feed._remove(self)


class ChangeFeed:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    def subscribe(
        self,
        collection: str,
        fetch: Callable[[], Any],
        on_change: Callable[[Any], None],
        on_error: Callable[[Exception], None] | None = None,
    ) -> Subscription:
        subscription = Subscription(self, collection, fetch, on_change, on_error)
        with self._lock:
            self._subscriptions[next(self._ids)] = subscription
        subscription.refresh()
        return subscription

    def publish(self, collection: str) -> None:
        with self._lock:
            targets = [sub for sub in self._subscriptions.values() if sub.collection == collection]
        for subscription in targets:
            # A failed delivery keeps the subscription registered; the next change retries it.
            subscription.refresh()

    def subscriber_count(self, collection: str | None = None) -> int:
        with self._lock:
            return sum(
                1 for sub in self._subscriptions.values() if collection is None or sub.collection == collection
            )

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            for key, value in list(self._subscriptions.items()):
                if value is subscription:
                    del self._subscriptions[key]
