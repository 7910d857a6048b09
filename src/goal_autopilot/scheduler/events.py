"""Synchronous publish/subscribe bus owned by event-producing components."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from goal_autopilot.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SchedulerEvent:
    """Notification delivered to subscribers."""

    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


EventHandler = Callable[[SchedulerEvent], None]


class EventBus:
    """Dispatches events to handlers registered for a type or for ``"*"``.

    Handler failures are logged and do not reach the publisher.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler``; the returned callable unsubscribes it."""

        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
        return lambda: self.unsubscribe(event_type, handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> bool:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler not in handlers:
                return False
            handlers.remove(handler)
            return True

    def publish(self, event_type: str, **payload: Any) -> SchedulerEvent:
        event = SchedulerEvent(event_type=event_type, payload=payload)
        with self._lock:
            handlers = [*self._handlers.get(event_type, []), *self._handlers.get("*", [])]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", event_type)
        return event
