"""
queuecast/input/feeds.py — Subscription hub for the live and settings feeds.

Both feeds deliver complete values (the full entry list, the whole settings
map); there are no partial patches. A hub keeps the latest value so that a
subscriber joining late starts from current data, and fans every delivery
out to subscribers in registration order.
"""

from __future__ import annotations

import threading
from typing import Callable, Generic, Optional, TypeVar

from queuecast.core.logger import get_logger

_log = get_logger()

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class FeedHub(Generic[T]):
    """
    Latest-wins value feed.

    Args:
        name: Feed name used in logs.

    Example::

        entries_feed: FeedHub[list[dict]] = FeedHub("entries")
        unsubscribe = entries_feed.subscribe(controller.on_entries)
        entries_feed.publish(rows)
        unsubscribe()
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._lock = threading.Lock()
        self._subscribers: list[Callable[[T], None]] = []
        self._latest: Optional[T] = None
        self._has_value = False
        self._deliveries = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def latest(self) -> Optional[T]:
        with self._lock:
            return self._latest

    @property
    def has_value(self) -> bool:
        with self._lock:
            return self._has_value

    @property
    def deliveries(self) -> int:
        with self._lock:
            return self._deliveries

    def subscribe(self, callback: Callable[[T], None], replay: bool = True) -> Unsubscribe:
        """
        Register ``callback`` for future deliveries.

        Args:
            callback: Called with each delivered value.
            replay: Immediately deliver the latest value, if one exists.

        Returns:
            A function that removes the subscription (idempotent).
        """
        with self._lock:
            self._subscribers.append(callback)
            latest, has_value = self._latest, self._has_value

        if replay and has_value:
            callback(latest)  # type: ignore[arg-type]

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, value: T) -> None:
        """Store ``value`` as the latest and deliver it to every subscriber."""
        with self._lock:
            self._latest = value
            self._has_value = True
            self._deliveries += 1
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(value)
            except Exception as exc:  # noqa: BLE001
                _log.error("feed", "subscriber_error", {
                    "feed": self._name,
                    "error": str(exc),
                })
