"""Scheduler lifecycle events and the bus that fans them out.

The heartbeat scheduler publishes ``heartbeat``, ``task_started``,
``task_completed`` and ``task_failed``. Publishing never waits on
subscribers; a background worker delivers each event to every subscriber
of its type concurrently, and a subscriber that raises is logged and
skipped.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

Subscriber = Callable[["Event"], Awaitable[None]]


@dataclass(frozen=True)
class Event:
    type: str
    worker_id: str
    data: dict[str, Any] = field(default_factory=dict)
    task_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """Bounded buffer plus one delivery worker.

    When the buffer is full new events are dropped with a warning, so a
    stalled subscriber can slow notifications but never the scheduler.
    """

    def __init__(self, max_queue: int = 1000) -> None:
        self._subscribers: defaultdict[str, list[Subscriber]] = defaultdict(list)
        self._buffer: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._worker: asyncio.Task | None = None

    @property
    def pending(self) -> int:
        return self._buffer.qsize()

    def on(self, event_type: str, subscriber: Subscriber) -> None:
        self._subscribers[event_type].append(subscriber)

    async def emit(self, event: Event) -> None:
        try:
            self._buffer.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event buffer full (%d), dropped %s", self._buffer.maxsize, event.type)

    async def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._work(), name="event-bus")

    async def flush(self) -> None:
        """Wait until everything emitted so far has been delivered."""
        if self._worker is None:
            while not self._buffer.empty():
                await self._fan_out(self._buffer.get_nowait())
                self._buffer.task_done()
        else:
            await self._buffer.join()

    async def stop(self) -> None:
        """Deliver what is buffered, then stop the worker."""
        await self.flush()
        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None

    async def _work(self) -> None:
        while True:
            event = await self._buffer.get()
            try:
                await self._fan_out(event)
            finally:
                self._buffer.task_done()

    async def _fan_out(self, event: Event) -> None:
        subscribers = self._subscribers.get(event.type)
        if not subscribers:
            return
        results = await asyncio.gather(
            *(subscriber(event) for subscriber in subscribers),
            return_exceptions=True,
        )
        for subscriber, result in zip(subscribers, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                logger.error(
                    "Subscriber %s failed on %s",
                    getattr(subscriber, "__qualname__", subscriber),
                    event.type,
                    exc_info=result,
                )
