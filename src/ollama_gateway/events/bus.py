"""Event bus broadcasting stream and daemon events to any number of listeners.

Usage:
    bus = EventBus()

    async def on_chunk(event):
        print(event.data)

    bus.subscribe(f"chat-chunk:{handle}", on_chunk)
    await bus.publish(f"chat-chunk:{handle}", "hello wo")
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import inspect
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)

WILDCARD = "*"


@dataclass
class Event:
    """Event data container."""

    name: str
    data: Any
    source: str | None = None


class EventBus:
    """Publish/subscribe hub; publishing with no subscribers is a no-op.

    Handlers subscribed to ``"*"`` receive every event after the
    name-specific handlers.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable]] = {}

    def subscribe(self, event_name: str, handler: Callable) -> None:
        """Subscribe to an event name (or ``"*"`` for all events)."""
        self._subscribers.setdefault(event_name, []).append(handler)
        LOGGER.debug(f"Subscribed to event: {event_name}")

    def unsubscribe(self, event_name: str, handler: Callable) -> None:
        """Unsubscribe from an event."""
        handlers = self._subscribers.get(event_name)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            del self._subscribers[event_name]
        LOGGER.debug(f"Unsubscribed from event: {event_name}")

    def subscriber_count(self, event_name: str) -> int:
        return len(self._subscribers.get(event_name, []))

    async def publish(
        self, event_name: str, data: Any, source: str | None = None
    ) -> None:
        """Deliver an event to its subscribers in subscription order."""
        event = Event(name=event_name, data=data, source=source)
        handlers = list(self._subscribers.get(event_name, []))
        handlers.extend(self._subscribers.get(WILDCARD, []))

        for handler in handlers:
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception as e:
                LOGGER.error(f"Event handler failed for {event_name}: {e}")

    def clear(self, event_name: str | None = None) -> None:
        """Clear subscribers for one event, or all of them."""
        if event_name:
            self._subscribers.pop(event_name, None)
        else:
            self._subscribers.clear()


# Process-wide bus shared by the emitter and the supervisor.
event_bus = EventBus()
