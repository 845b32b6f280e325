"""Async event bus multiplexing every producer into the scheduler.

Producers ``emit`` (waiting for room) or ``post`` (dropping when full);
the scheduler is the single consumer.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import TypeVar

from agentdeck.adapters.events import DeckEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventBus:
    """Bounded async queue of scheduler messages."""

    def __init__(self, maxsize: int = 1000) -> None:
        self._queue: asyncio.Queue[DeckEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def emit(self, event: DeckEvent) -> None:
        """Queue *event*, applying backpressure for up to 30 seconds."""
        if self._closed:
            return
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=30.0)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for 30s, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )

    def post(self, event: DeckEvent) -> bool:
        """Queue *event* without waiting. Returns False if it was dropped."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("EventBus full, dropping: %s", event.event_type)
            return False
        return True

    async def consume(self) -> AsyncIterator[DeckEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True


async def get_until_closed(queue: asyncio.Queue[T], closed: asyncio.Event) -> T | None:
    """Return the next queued item, or None once *closed* is set and the queue is empty."""
    if not queue.empty():
        return queue.get_nowait()
    if closed.is_set():
        return None
    getter = asyncio.ensure_future(queue.get())
    waiter = asyncio.ensure_future(closed.wait())
    try:
        await asyncio.wait({getter, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not getter.done():
            getter.cancel()
    if getter.done() and not getter.cancelled():
        return getter.result()
    return None
