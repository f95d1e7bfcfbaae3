"""Async event bus carrying coordinator events to UI consumers.

The coordinator's pump tasks publish every transcript update here in
emission order; a UI loop consumes them and renders replace-by-id.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from agentlink.adapters.events import ConversationEvent

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging coordinator output to UI consumers."""

    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[ConversationEvent] = asyncio.Queue(
            maxsize=maxsize
        )
        self._put_timeout = put_timeout
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, event: ConversationEvent) -> None:
        """Publish an event, waiting for room when consumers lag."""
        if self._closed:
            return
        try:
            # Use await put() with timeout to add backpressure instead of dropping
            await asyncio.wait_for(self._queue.put(event), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s (queue size: %d)",
                self._put_timeout,
                event.event_type,
                self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[ConversationEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(
                    self._queue.get(), timeout=0.5
                )
                yield event
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def drain(self) -> list[ConversationEvent]:
        """Remove and return every event queued right now."""
        events: list[ConversationEvent] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

    def reset(self) -> None:
        """Drain leftover events and re-open the bus."""
        self.drain()
        self._closed = False
