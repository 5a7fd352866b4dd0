"""Synchronous publish/subscribe bus for pattern lifecycle notifications."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

PATTERN_LEARNED = "pattern.learned"
PATTERN_REINFORCED = "pattern.reinforced"
PATTERN_ACCURACY_CHANGED = "pattern.accuracy_changed"
PATTERN_DEACTIVATED = "pattern.deactivated"

WILDCARD = "*"

Listener = Callable[[Dict[str, Any]], None]


class EventBus:
    """Minimal synchronous publish/subscribe event bus.

    Subscribers registered under ``"*"`` receive every event.  Payloads are
    copied per publish and carry the event name under ``"event"`` and the
    publish time under ``"published_at"``.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Tuple[Listener, bool]]] = {}
        self._lock = threading.RLock()

    def subscribe(self, event_name: str, callback: Listener, *, once: bool = False) -> Listener:
        """Register ``callback`` to be invoked when ``event_name`` is published."""

        if not callable(callback):
            raise TypeError("callback must be callable")
        key = str(event_name).strip()
        if not key:
            raise ValueError("event_name must be a non-empty string")
        with self._lock:
            self._listeners.setdefault(key, []).append((callback, bool(once)))
        return callback

    def unsubscribe(self, event_name: str, callback: Listener) -> None:
        key = str(event_name).strip()
        if not key:
            return
        with self._lock:
            listeners = self._listeners.get(key, [])
            self._listeners[key] = [entry for entry in listeners if entry[0] != callback]
            if not self._listeners[key]:
                self._listeners.pop(key, None)

    def publish(self, event_name: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """Invoke subscribers for ``event_name`` and return how many ran.

        A failing subscriber is logged and never interrupts the publisher.
        """

        key = str(event_name).strip()
        if not key:
            return 0
        with self._lock:
            listeners = [(key, entry) for entry in self._listeners.get(key, [])]
            if key != WILDCARD:
                listeners.extend((WILDCARD, entry) for entry in self._listeners.get(WILDCARD, []))
        if not listeners:
            return 0

        message = dict(payload or {})
        message.setdefault("event", key)
        message.setdefault("published_at", datetime.now(timezone.utc).isoformat())

        delivered = 0
        expired: List[Tuple[str, Listener]] = []
        for registered_under, (callback, once) in listeners:
            try:
                callback(dict(message))
                delivered += 1
            except Exception:
                logger.exception("Event handler for %s failed", key)
            if once:
                expired.append((registered_under, callback))
        for registered_under, callback in expired:
            self.unsubscribe(registered_under, callback)
        return delivered

    def listener_count(self, event_name: Optional[str] = None) -> int:
        with self._lock:
            if event_name is None:
                return sum(len(entries) for entries in self._listeners.values())
            return len(self._listeners.get(str(event_name).strip(), []))


_GLOBAL_EVENT_BUS: Optional[EventBus] = None
_EVENT_BUS_LOCK = threading.Lock()


def get_event_bus() -> EventBus:
    """Return the singleton :class:`EventBus` instance."""

    global _GLOBAL_EVENT_BUS
    with _EVENT_BUS_LOCK:
        if _GLOBAL_EVENT_BUS is None:
            _GLOBAL_EVENT_BUS = EventBus()
    return _GLOBAL_EVENT_BUS


__all__ = [
    "EventBus",
    "PATTERN_ACCURACY_CHANGED",
    "PATTERN_DEACTIVATED",
    "PATTERN_LEARNED",
    "PATTERN_REINFORCED",
    "WILDCARD",
    "get_event_bus",
]
