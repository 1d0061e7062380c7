"""Tests for the in-process event bus."""

from __future__ import annotations

import asyncio

from foreman.events import Event, EventBus


def _make_event(event_type: str = "heartbeat", data: dict | None = None) -> Event:
    return Event(type=event_type, worker_id="test-worker", data=data or {})


class TestEventBus:

    async def test_emit_handler_receives_event(self):
        bus = EventBus()
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        bus.on("heartbeat", handler)
        await bus.start()
        try:
            await bus.emit(_make_event())
            await asyncio.sleep(0.1)
            assert len(received) == 1
            assert received[0].worker_id == "test-worker"
        finally:
            await bus.stop()

    async def test_multiple_handlers_same_event(self):
        bus = EventBus()
        results: list[str] = []

        async def handler_a(event: Event) -> None:
            results.append("a")

        async def handler_b(event: Event) -> None:
            results.append("b")

        bus.on("task_failed", handler_a)
        bus.on("task_failed", handler_b)
        await bus.start()
        await bus.emit(_make_event("task_failed"))
        await bus.stop()

        assert sorted(results) == ["a", "b"]

    async def test_failing_handler_isolated(self):
        bus = EventBus()
        received: list[Event] = []

        async def broken(event: Event) -> None:
            raise RuntimeError("handler bug")

        async def healthy(event: Event) -> None:
            received.append(event)

        bus.on("task_completed", broken)
        bus.on("task_completed", healthy)
        await bus.start()
        await bus.emit(_make_event("task_completed"))
        await bus.emit(_make_event("task_completed"))
        await bus.stop()

        assert len(received) == 2

    async def test_unsubscribed_types_are_ignored(self):
        bus = EventBus()
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        bus.on("task_failed", handler)
        await bus.start()
        await bus.emit(_make_event("heartbeat"))
        await bus.stop()

        assert received == []

    async def test_stop_flushes_buffered_events(self):
        bus = EventBus()
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        bus.on("heartbeat", handler)
        # Not started: events only sit in the buffer
        for _ in range(3):
            await bus.emit(_make_event())
        assert bus.pending == 3

        await bus.stop()
        assert len(received) == 3
        assert bus.pending == 0

    async def test_full_buffer_drops_events(self):
        bus = EventBus(max_queue=2)
        for _ in range(5):
            await bus.emit(_make_event())
        assert bus.pending == 2

    async def test_flush_waits_for_delivery(self):
        bus = EventBus()
        received: list[Event] = []

        async def slow(event: Event) -> None:
            await asyncio.sleep(0.05)
            received.append(event)

        bus.on("heartbeat", slow)
        await bus.start()
        try:
            await bus.emit(_make_event())
            await bus.emit(_make_event())
            await bus.flush()
            assert len(received) == 2
            assert bus.pending == 0
        finally:
            await bus.stop()
