"""
Callback-based event subscriptions.

An optional layer over the dispatch channel: :class:`EventManager` drains
the channel and hands each event to the handlers registered for its
``event_type``. Applications that prefer to pull events can iterate the
channel directly instead.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable, Coroutine

from milky_runtime.channel import DispatchChannel
from milky_runtime.types import Event

logger = logging.getLogger(__name__)

# Type alias for event handlers
EventHandler = Callable[[Event], Coroutine[Any, Any, None] | None]


class EventManager:
    """Routes events from a dispatch channel to registered handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._wildcard_handlers: list[EventHandler] = []
        self._listen_task: asyncio.Task[None] | None = None

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for a specific event type."""
        self._handlers[event_type].append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Register a handler for all event types."""
        self._wildcard_handlers.append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler | None = None) -> None:
        """Remove a handler (or all handlers) for an event type."""
        if handler is None:
            self._handlers.pop(event_type, None)
        else:
            handlers = self._handlers.get(event_type, [])
            self._handlers[event_type] = [h for h in handlers if h is not handler]

    @property
    def running(self) -> bool:
        return self._listen_task is not None and not self._listen_task.done()

    async def dispatch(self, event: Event) -> None:
        """Dispatch an event to all matching handlers, in registration order."""
        handlers = list(self._handlers.get(event.event_type, []))
        handlers.extend(self._wildcard_handlers)

        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Error in event handler for %s", event.event_type)

    async def run(self, channel: DispatchChannel) -> None:
        """Drain ``channel`` until it is closed, dispatching every event."""
        async for event in channel:
            await self.dispatch(event)
        logger.debug("Event dispatch loop ended")

    def start(self, channel: DispatchChannel) -> None:
        """Start dispatching events from the given channel in the background."""
        self._listen_task = asyncio.create_task(self.run(channel))

    async def stop(self) -> None:
        """Stop the dispatch loop."""
        if self._listen_task and not self._listen_task.done():
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
        self._listen_task = None
