"""Tests for the deduplicating task queue."""

import asyncio
from datetime import timedelta

import pytest

from foreman.queue.payloads import ChatReplyPayload, MissionPayload
from foreman.queue.tasks import TRIMMED_OVERFLOW, TaskQueue


class TestEnqueue:

    async def test_new_item_is_queued(self, queue: TaskQueue):
        result = await queue.enqueue("k1", "P1", {"task_type": "maintenance"})

        assert result.coalesced is False
        item = await queue.get(result.id)
        assert item.status == "queued"
        assert item.priority == "P1"
        assert item.task_type == "maintenance"
        assert item.attempts == 0
        assert item.coalesced_count == 0

    async def test_empty_dedupe_key_rejected(self, queue: TaskQueue):
        with pytest.raises(ValueError):
            await queue.enqueue("", "P1", {})

    async def test_unknown_priority_rejected(self, queue: TaskQueue):
        with pytest.raises(ValueError):
            await queue.enqueue("k1", "P9", {})
        assert await queue.count_ready() == 0

    async def test_duplicate_within_window_coalesces(self, queue: TaskQueue, clock):
        first = await queue.enqueue("K", "P1", {"task_type": "maintenance", "n": 1})
        clock.advance(minutes=5)
        second = await queue.enqueue("K", "P1", {"task_type": "maintenance", "n": 2})

        assert second.coalesced is True
        assert second.id == first.id
        item = await queue.get(first.id)
        assert item.coalesced_count == 1
        assert item.payload["n"] == 2
        assert await queue.count_ready() == 1

    async def test_coalesce_keeps_more_urgent_priority(self, queue: TaskQueue, clock):
        first = await queue.enqueue("K", "P2", {"task_type": "maintenance"})
        clock.advance(minutes=5)
        await queue.enqueue("K", "P0", {"task_type": "maintenance"})
        clock.advance(minutes=1)
        await queue.enqueue("K", "P2", {"task_type": "maintenance"})

        item = await queue.get(first.id)
        assert item.priority == "P0"
        assert item.coalesced_count == 2

    async def test_duplicate_after_window_creates_new_item(self, queue: TaskQueue, clock):
        first = await queue.enqueue("K", "P1", {"task_type": "maintenance"})
        clock.advance(minutes=16)
        second = await queue.enqueue("K", "P1", {"task_type": "maintenance"})

        assert second.coalesced is False
        assert second.id != first.id
        assert await queue.count_ready() == 2

    async def test_coalesce_window_slides_with_updates(self, queue: TaskQueue, clock):
        first = await queue.enqueue("K", "P1", {"task_type": "maintenance"})
        for _ in range(3):
            clock.advance(minutes=10)
            result = await queue.enqueue("K", "P1", {"task_type": "maintenance"})
            assert result.id == first.id

    async def test_terminal_items_never_coalesce(self, queue: TaskQueue):
        first = await queue.enqueue("K", "P1", {"task_type": "maintenance"})
        claimed = await queue.claim_next()
        await queue.finalize(claimed.id, success=True)

        second = await queue.enqueue("K", "P1", {"task_type": "maintenance"})
        assert second.coalesced is False
        assert second.id != first.id

    async def test_running_item_absorbs_duplicate(self, queue: TaskQueue):
        first = await queue.enqueue("K", "P1", {"task_type": "maintenance"})
        await queue.claim_next()

        second = await queue.enqueue("K", "P0", {"task_type": "maintenance"})
        assert second.coalesced is True
        item = await queue.get(first.id)
        assert item.status == "running"
        assert item.priority == "P0"

    async def test_pydantic_payload_is_stored_as_json(self, queue: TaskQueue):
        payload = MissionPayload(objective="speed up parser", run_id="run_x")
        result = await queue.enqueue("mission:1", "P1", payload)

        item = await queue.get(result.id)
        assert item.task_type == "codex_mission"
        assert item.payload["objective"] == "speed up parser"
        assert item.payload["run_id"] == "run_x"


class TestClaim:

    async def test_empty_queue_returns_none(self, queue: TaskQueue):
        assert await queue.claim_next() is None

    async def test_priority_order(self, queue: TaskQueue, clock):
        for key, priority in (("a", "P2"), ("b", "P0"), ("c", "P1")):
            await queue.enqueue(key, priority, {"task_type": "maintenance"})
            clock.advance(seconds=1)

        order = [(await queue.claim_next()).priority for _ in range(3)]
        assert order == ["P0", "P1", "P2"]

    async def test_fifo_within_priority(self, queue: TaskQueue, clock):
        for key in ("first", "second", "third"):
            await queue.enqueue(key, "P1", {"task_type": "maintenance"})
            clock.advance(seconds=1)

        keys = [(await queue.claim_next()).dedupe_key for _ in range(3)]
        assert keys == ["first", "second", "third"]

    async def test_claim_marks_running_and_counts_attempt(self, queue: TaskQueue):
        result = await queue.enqueue("K", "P1", {"task_type": "maintenance"})
        item = await queue.claim_next()

        assert item.id == result.id
        assert item.status == "running"
        assert item.attempts == 1
        assert await queue.count_running() == 1
        assert await queue.claim_next() is None

    async def test_deferred_item_not_claimable_until_available(self, queue: TaskQueue, clock):
        await queue.enqueue(
            "later", "P0", {"task_type": "maintenance"},
            available_at=clock.current + timedelta(minutes=10),
        )
        assert await queue.count_ready() == 0
        assert await queue.claim_next() is None

        clock.advance(minutes=10)
        item = await queue.claim_next()
        assert item is not None
        assert item.dedupe_key == "later"

    async def test_lane_filter(self, queue: TaskQueue, clock):
        await queue.enqueue("bg", "P0", {"task_type": "maintenance"})
        clock.advance(seconds=1)
        await queue.enqueue("chat", "P2", ChatReplyPayload(request_text="hi"))

        assert await queue.count_ready(lane="interactive") == 1
        item = await queue.claim_next(lane="interactive")
        assert item.dedupe_key == "chat"
        assert item.lane == "interactive"
        assert await queue.claim_next(lane="interactive") is None

    async def test_concurrent_claims_never_share_an_item(self, queue: TaskQueue, clock):
        for i in range(6):
            await queue.enqueue(f"k{i}", "P1", {"task_type": "maintenance"})
            clock.advance(seconds=1)

        claimed = await asyncio.gather(*(queue.claim_next() for _ in range(10)))
        ids = [item.id for item in claimed if item is not None]
        assert len(ids) == 6
        assert len(set(ids)) == 6


class TestFinalize:

    async def test_success_marks_done(self, queue: TaskQueue):
        await queue.enqueue("K", "P1", {"task_type": "maintenance"})
        item = await queue.claim_next()
        await queue.finalize(item.id, success=True)

        done = await queue.get(item.id)
        assert done.status == "done"
        assert done.last_error is None

    async def test_failure_records_error(self, queue: TaskQueue):
        await queue.enqueue("K", "P1", {"task_type": "maintenance"})
        item = await queue.claim_next()
        await queue.finalize(item.id, success=False, error="boom")

        failed = await queue.get(item.id)
        assert failed.status == "failed"
        assert failed.last_error == "boom"

    async def test_failure_without_message_gets_placeholder(self, queue: TaskQueue):
        await queue.enqueue("K", "P1", {"task_type": "maintenance"})
        item = await queue.claim_next()
        await queue.finalize(item.id, success=False)

        assert (await queue.get(item.id)).last_error == "worker_failed"

    async def test_failed_item_is_not_retried(self, queue: TaskQueue):
        await queue.enqueue("K", "P1", {"task_type": "maintenance"})
        item = await queue.claim_next()
        await queue.finalize(item.id, success=False, error="boom")

        assert await queue.claim_next() is None
        assert await queue.count_by_status() == {"failed": 1}


class TestTrim:

    async def test_trim_keeps_newest(self, queue: TaskQueue, clock):
        for i in range(5):
            await queue.enqueue(f"eval:{i}", "P1", {"task_type": "portfolio_eval"})
            clock.advance(seconds=1)
        await queue.enqueue("other", "P1", {"task_type": "maintenance"})

        trimmed = await queue.trim_queued("portfolio_eval", keep=2)

        assert trimmed == 3
        failed = await queue.list(status="failed")
        assert {item.dedupe_key for item in failed} == {"eval:0", "eval:1", "eval:2"}
        assert all(item.last_error == TRIMMED_OVERFLOW for item in failed)
        assert await queue.count_ready() == 3

    async def test_trim_under_cap_is_noop(self, queue: TaskQueue):
        await queue.enqueue("eval:0", "P1", {"task_type": "portfolio_eval"})
        assert await queue.trim_queued("portfolio_eval", keep=24) == 0


class TestCounts:

    async def test_count_running_by_type(self, queue: TaskQueue, clock):
        await queue.enqueue("m", "P0", MissionPayload(objective="x"))
        clock.advance(seconds=1)
        await queue.enqueue("x", "P1", {"task_type": "maintenance"})
        await queue.claim_next()
        await queue.claim_next()

        assert await queue.count_running() == 2
        assert await queue.count_running("codex_mission") == 1

    async def test_count_ready_by_task_types(self, queue: TaskQueue):
        await queue.enqueue("m", "P1", MissionPayload(objective="x"))
        await queue.enqueue("x", "P1", {"task_type": "maintenance"})
        await queue.enqueue("c", "P0", {"task_type": "chat_reply"})

        assert await queue.count_ready(task_types=("codex_mission",)) == 1
        assert await queue.count_ready(task_types=("codex_mission", "maintenance")) == 2
        assert await queue.count_ready() == 3

    async def test_list_newest_first(self, queue: TaskQueue, clock):
        await queue.enqueue("a", "P1", {"task_type": "maintenance"})
        clock.advance(seconds=1)
        await queue.enqueue("b", "P1", {"task_type": "maintenance"})

        items = await queue.list()
        assert [i.dedupe_key for i in items] == ["b", "a"]
