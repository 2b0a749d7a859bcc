"""
Bounded, ordered hand-off queue between a transport driver and the
application.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque

from milky_runtime.errors import ChannelClosedError
from milky_runtime.types import Event

logger = logging.getLogger(__name__)


class DispatchChannel:
    """Bounded FIFO of decoded events.

    Insertion order is delivery order. Any number of consumers may drain
    it; each event goes to exactly one of them. :meth:`close` is terminal:
    further sends raise :class:`ChannelClosedError`, buffered events can
    still be drained, and iteration stops once the buffer is empty.

    Usage::

        async for event in channel:
            handle(event)
    """

    def __init__(self, capacity: int = 256) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._buffer: deque[Event] = deque()
        self._closed = False
        self._cond = asyncio.Condition()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._buffer)

    def full(self) -> bool:
        return len(self._buffer) >= self._capacity

    async def send(self, event: Event) -> None:
        """Append an event, suspending while the channel is full."""
        async with self._cond:
            await self._cond.wait_for(lambda: self._closed or not self.full())
            if self._closed:
                raise ChannelClosedError("Dispatch channel is closed")
            self._buffer.append(event)
            self._cond.notify_all()

    async def offer(self, event: Event, timeout: float) -> bool:
        """Append an event, waiting at most ``timeout`` seconds for room.

        Returns ``False`` if the channel stayed full.
        """
        try:
            await asyncio.wait_for(self.send(event), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def receive(self) -> Event:
        """Take the oldest event, suspending while the channel is empty.

        Raises:
            ChannelClosedError: The channel is closed and fully drained.
        """
        async with self._cond:
            await self._cond.wait_for(lambda: self._closed or bool(self._buffer))
            if not self._buffer:
                raise ChannelClosedError("Dispatch channel is closed")
            event = self._buffer.popleft()
            self._cond.notify_all()
            return event

    async def close(self) -> None:
        """Stop accepting events and wake every waiter."""
        async with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
        logger.debug("Dispatch channel closed with %d buffered events", len(self._buffer))

    def __aiter__(self) -> DispatchChannel:
        return self

    async def __anext__(self) -> Event:
        try:
            return await self.receive()
        except ChannelClosedError:
            raise StopAsyncIteration from None
