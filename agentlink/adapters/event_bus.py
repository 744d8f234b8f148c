"""Async fan-out channel for one supervisor's event feed.

A single producer (the process reader task) publishes; each subscriber
gets its own queue so a slow consumer never steals events from another.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)

_CLOSED = object()

# How long a bounded subscriber may block the producer before the event
# is dropped for that subscriber.
_PUT_TIMEOUT_SECONDS = 30.0


class Subscription:
    """One consumer's view of the bus. Iterate it with ``async for``."""

    def __init__(self, bus: EventBus, maxsize: int) -> None:
        self._bus = bus
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._finished = False

    async def _put(self, item: Any) -> None:
        if self._finished:
            return
        try:
            await asyncio.wait_for(self._queue.put(item), timeout=_PUT_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus subscriber blocked for %.0fs, dropping: %s (queue size: %d)",
                _PUT_TIMEOUT_SECONDS,
                type(item).__name__,
                self._queue.qsize(),
            )

    def _put_nowait(self, item: Any) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            # Make room for the close marker; the subscriber is going away.
            self._queue.get_nowait()
            self._queue.put_nowait(item)

    async def get(self) -> Any:
        """Next event, or raise StopAsyncIteration once the bus is closed."""
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        return item

    def get_nowait(self) -> Any | None:
        """Next queued event, or None when nothing is waiting."""
        if self._finished or self._queue.empty():
            return None
        item = self._queue.get_nowait()
        if item is _CLOSED:
            self._finished = True
            return None
        return item

    def __aiter__(self) -> AsyncIterator[Any]:
        return self

    async def __anext__(self) -> Any:
        return await self.get()

    def close(self) -> None:
        """Detach from the bus; pending iteration ends."""
        self._bus._unsubscribe(self)
        if not self._finished:
            self._put_nowait(_CLOSED)


class EventBus:
    """Per-instance publish/subscribe channel. No global registry."""

    def __init__(self, maxsize: int = 0) -> None:
        self._maxsize = maxsize
        self._subscribers: list[Subscription] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> Subscription:
        """Register a consumer. Events published from now on are delivered."""
        sub = Subscription(self, self._maxsize)
        if self._closed:
            sub._put_nowait(_CLOSED)
        else:
            self._subscribers.append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    async def publish(self, event: Any) -> None:
        if self._closed:
            logger.debug("EventBus closed, dropping %s", type(event).__name__)
            return
        for sub in list(self._subscribers):
            await sub._put(event)

    async def consume(self) -> AsyncIterator[Any]:
        """Subscribe and yield events until the bus closes."""
        sub = self.subscribe()
        try:
            async for event in sub:
                yield event
        finally:
            self._unsubscribe(sub)

    def close(self) -> None:
        """End every subscription. Further publishes are dropped."""
        if self._closed:
            return
        self._closed = True
        for sub in self._subscribers:
            sub._put_nowait(_CLOSED)
        self._subscribers.clear()

    def reset(self) -> None:
        """Re-open a closed bus for new subscribers."""
        self._closed = False
