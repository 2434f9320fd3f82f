"""
In-process event bus for domain events.

Business code publishes a named event after its own state change is
committed; subscribers (the notification orchestrator among them) react to
it in the publisher's thread.

Design decisions:
- Synchronous delivery, in registration order, in the caller's thread
- Name-based subscriptions plus a wildcard for audit/debug handlers
- No persistence and no retries: a subscriber that needs durability must
  finish its own durable write before returning
- Publishing is best-effort: a failing handler is logged and skipped, it
  never reaches the publisher and never stops the other handlers
- Thread-safe registration; publish works on a snapshot of the handlers
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable
from uuid import uuid4

from shared.models import utcnow

logger = logging.getLogger("event_bus")

WILDCARD = "*"


@dataclass
class Event:
    """
    A domain event as seen by subscribers.

    Attributes:
        event_type: Event name used for routing (e.g. "appointment.confirmed")
        payload: JSON-serializable event data
        source: Which component published the event
        event_id: Unique identifier for this event instance
        timestamp: When the event was published
    """
    event_type: str
    payload: dict[str, Any]
    source: str = "application"
    event_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=utcnow)

    def __str__(self) -> str:
        return f"Event({self.event_type}, id={self.event_id[:8]}, source={self.source})"


EventHandler = Callable[[Event], None]


class EventBus:
    """
    Publish/subscribe register.

    Example usage:
        bus = EventBus()
        bus.subscribe("appointment.confirmed", orchestrator.on_event)
        bus.publish("appointment.confirmed", {"appointmentId": 42})
    """

    def __init__(self):
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        """
        Register a handler for an event name.

        The same handler can be subscribed more than once and will then be
        called once per registration.
        """
        with self._lock:
            self._subscribers[event_name].append(handler)
        logger.debug(f"Subscribed handler to '{event_name}' events")

    def subscribe_all(self, handler: EventHandler) -> None:
        """Register a handler for every event (runs after the name-specific ones)."""
        self.subscribe(WILDCARD, handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> bool:
        """
        Remove one registration of a handler.

        Returns:
            True if the handler was found and removed, False otherwise
        """
        with self._lock:
            try:
                self._subscribers[event_name].remove(handler)
            except ValueError:
                return False
        logger.debug(f"Unsubscribed handler from '{event_name}' events")
        return True

    def publish(self, event_name: str, payload: dict[str, Any], source: str = "application") -> int:
        """
        Publish an event to all subscribers.

        Args:
            event_name: Name of the event (e.g. "message.created")
            payload: Event data
            source: Publishing component, for logs

        Returns:
            Number of handlers invoked
        """
        event = Event(event_type=event_name, payload=payload, source=source)
        logger.info(f"Publishing: {event}")

        with self._lock:
            handlers = list(self._subscribers.get(event_name, []))
            if event_name != WILDCARD:
                handlers += self._subscribers.get(WILDCARD, [])

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(f"Handler raised exception for {event}")

        if not handlers:
            logger.warning(f"No handlers for event type '{event_name}'")

        return len(handlers)

    def get_subscriber_count(self, event_name: str) -> int:
        """Get the number of handlers registered for an event name."""
        with self._lock:
            return len(self._subscribers.get(event_name, []))

    def clear_subscribers(self) -> None:
        """Remove all subscribers."""
        with self._lock:
            self._subscribers.clear()
