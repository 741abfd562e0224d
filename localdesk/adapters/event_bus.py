"""Async event bus bridging engine callbacks to frontend consumers.

Runners fire events via callback. The EventBus queues them for a
consumer loop. The queue is unbounded and the callback never awaits
the consumer, so a slow frontend cannot stall a runner.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from localdesk.adapters.events import EngineEvent, dict_to_event
from localdesk.engine.config import EventCallback

logger = logging.getLogger(__name__)

_CLOSE = object()


class EventBus:
    """Async queue bridging engine callbacks to event consumers."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def _callback(self, data: dict[str, Any]) -> None:
        """Callback to pass as a runner or coordinator event_callback."""
        if self._closed:
            return
        self._queue.put_nowait(dict_to_event(data))

    def make_callback(self) -> EventCallback:
        return self._callback

    def emit(self, event: EngineEvent) -> None:
        """Manually emit an event (for frontend-generated events)."""
        if self._closed:
            return
        self._queue.put_nowait(event)

    async def consume(self) -> AsyncIterator[EngineEvent]:
        """Yield events in arrival order until close().

        Events queued before close() are still delivered.
        """
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                return
            yield item

    def close(self) -> None:
        """Stop accepting events and end consume() after the backlog."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSE)

    def reset(self) -> None:
        """Drain leftover events and re-open the bus."""
        while not self._queue.empty():
            self._queue.get_nowait()
        self._closed = False
