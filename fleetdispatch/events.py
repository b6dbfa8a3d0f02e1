# fleet-dispatch/fleetdispatch/events.py
"""
Observer interface for engine events.

The engine publishes every state change a client may care about on an
``EventBus``. Subscribers register for one event type or for all of them.
A subscriber that raises is logged and skipped; it never breaks the engine
or the remaining subscribers.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(Enum):
    ORDER_ASSIGNED = "order_assigned"
    DRIVER_ACCEPTED_ORDER = "driver_accepted_order"
    DRIVER_REJECTED_ORDER = "driver_rejected_order"
    ORDER_COMPLETED = "order_completed"
    ORDER_CANCELLED = "order_cancelled"
    TRAFFIC_UPDATED = "traffic_updated"
    ORDER_ETA_UPDATED = "order_eta_updated"


@dataclass
class Event:
    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None


Handler = Callable[[Event], None]


class EventBus:
    """Synchronous publish/subscribe hub."""

    def __init__(self) -> None:
        self._handlers: Dict[EventType, List[Handler]] = {}
        self._catch_all: List[Handler] = []
        self._lock = threading.Lock()

    def subscribe(self, event_type: EventType, handler: Handler) -> None:
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        with self._lock:
            self._catch_all.append(handler)

    def unsubscribe(self, handler: Handler, event_type: Optional[EventType] = None) -> None:
        """Remove a handler from one event type, or from everything if no type is given."""
        with self._lock:
            types = [event_type] if event_type is not None else list(self._handlers)
            for t in types:
                handlers = self._handlers.get(t, [])
                if handler in handlers:
                    handlers.remove(handler)
            if event_type is None and handler in self._catch_all:
                self._catch_all.remove(handler)

    def publish(self, event_type: EventType, payload: Optional[Dict[str, Any]] = None,
                timestamp: Optional[datetime] = None) -> Event:
        event = Event(type=event_type, payload=payload or {}, timestamp=timestamp)
        with self._lock:
            handlers = list(self._handlers.get(event_type, [])) + list(self._catch_all)

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(f"Event handler {handler!r} failed on {event_type.value}")
        return event
