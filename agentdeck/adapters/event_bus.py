"""Async event bus carrying presentation events out of the core.

The session registry emits typed events; a presentation consumer
iterates consume() and re-reads whatever state it needs from the
registry's read-only accessors.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from agentdeck.adapters.events import DeckEvent

logger = logging.getLogger(__name__)


class EventBus:
    """Bounded asyncio queue between the registry and presentation consumers."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[DeckEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def emit(self, event: DeckEvent) -> None:
        if self._closed:
            return
        try:
            # Backpressure instead of silently dropping under load.
            await asyncio.wait_for(self._queue.put(event), timeout=30.0)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for 30s, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )

    def emit_nowait(self, event: DeckEvent) -> None:
        """Emit from synchronous code; drops the event when the queue is full."""
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error(
                "EventBus full, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[DeckEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def drain(self) -> list[DeckEvent]:
        """Remove and return every queued event without waiting."""
        events: list[DeckEvent] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed
