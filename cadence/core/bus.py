"""
Cadence Event Bus — publish/subscribe channel for daemon outcomes.

Subscribers register for an exact type ("queue:complete"), a category
wildcard ("queue:*") or everything ("*"). A failing subscriber is logged
and never affects the emitter or the other subscribers.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from typing import Awaitable, Callable

from cadence.core.events import Event

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], Awaitable[None]]


class EventBus:
    """
    Usage:
        bus = EventBus()
        bus.on("queue:*", on_queue_event)
        await bus.emit(Event(type=EventType.QUEUE_COMPLETE, data={...}))
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = {}

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe to an event type. Supports wildcards: 'queue:*', '*'."""
        self._subscribers.setdefault(event_type, []).append(handler)

    def off(self, event_type: str, handler: EventHandler) -> None:
        """Unsubscribe from an event type."""
        handlers = [h for h in self._subscribers.get(event_type, []) if h is not handler]
        if handlers:
            self._subscribers[event_type] = handlers
        else:
            self._subscribers.pop(event_type, None)

    async def emit(self, event: Event) -> Event:
        """Deliver an event to every matching subscriber concurrently."""
        handlers = self._find_handlers(event.type)
        if handlers:
            results = await asyncio.gather(
                *(h(event) for h in handlers),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, Exception):
                    logger.error(
                        f"Subscriber error for {event.type}: {result}",
                        exc_info=result,
                    )
        return event

    def emit_nowait(self, event: Event) -> None:
        """Schedule an emit without waiting. Needs a running event loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No event loop for nowait emit: {event.type}")
            return
        loop.create_task(self.emit(event))

    def _find_handlers(self, event_type: str) -> list[EventHandler]:
        handlers: list[EventHandler] = []
        for pattern, subs in self._subscribers.items():
            if pattern == event_type or pattern == "*":
                handlers.extend(subs)
            elif "*" in pattern and fnmatch.fnmatch(event_type, pattern):
                handlers.extend(subs)
        return handlers

    @property
    def subscriber_count(self) -> int:
        return sum(len(subs) for subs in self._subscribers.values())
