"""
View Cache Module - QR Classroom Attendance Tracker

Read-through cache for the lists a view displays (students, classes,
recent attendance). Each entry is bound to the tables it was built from
and is dropped when the notification system reports a change on one of
them. The next read refetches the whole list; cached lists are never
patched in place.
"""

import logging
import threading
from typing import Any, Callable, Dict, Iterable


class ViewCache:
    """Read-through cache invalidated by change notifications."""

    def __init__(self, notification_system):
        self.logger = logging.getLogger(__name__)
        self._notifications = notification_system
        self._lock = threading.Lock()
        self._views: Dict[str, tuple] = {}
        self._entries: Dict[str, Any] = {}
        self._generations: Dict[str, int] = {}
        self._subscriptions: Dict[str, int] = {}
        self.hits = 0
        self.misses = 0

    def register(self, key: str, tables: Iterable[str], loader: Callable[[], Any]) -> None:
        """
        Declare a cached view.

        Args:
            key (str): Cache key, e.g. ``'students'``
            tables (Iterable[str]): Tables whose changes invalidate the view
            loader (callable): Zero-argument function that fetches the view
        """
        tables = tuple(tables)
        with self._lock:
            self._views[key] = (tables, loader)
            self._entries.pop(key, None)
            # NotificationSystem never holds its own lock while running callbacks
            for table in tables:
                if table not in self._subscriptions:
                    self._subscriptions[table] = self._notifications.subscribe(table, self._on_change)

    def get(self, key: str) -> Any:
        """Return the cached view, loading it on a miss."""
        with self._lock:
            if key not in self._views:
                raise KeyError(f"Unregistered view: {key}")
            if key in self._entries:
                self.hits += 1
                return self._entries[key]
            self.misses += 1
            loader = self._views[key][1]
            generation = self._generations.get(key, 0)

        value = loader()

        with self._lock:
            # A change that arrived while the loader ran makes this value stale
            if self._generations.get(key, 0) == generation:
                self._entries[key] = value
        return value

    def invalidate(self, key: str = None) -> None:
        """Drop one view, or every view when no key is given."""
        with self._lock:
            self._drop([key] if key else list(self._views))

    def _drop(self, keys):
        for key in keys:
            self._entries.pop(key, None)
            self._generations[key] = self._generations.get(key, 0) + 1

    def _on_change(self, notification) -> None:
        with self._lock:
            stale = [
                key for key, (tables, _) in self._views.items()
                if notification.table in tables
            ]
            self._drop(stale)
        if stale:
            self.logger.debug(f"Invalidated {', '.join(stale)} after {notification.message}")

    def close(self) -> None:
        """Unsubscribe from every table."""
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription_id in subscriptions:
            self._notifications.unsubscribe(subscription_id)
