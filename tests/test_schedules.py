"""Tests for schedule management."""

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio

from foreman.queue.schedules import ScheduleManager, first_fire, following_fire
from foreman.storage.models import Schedule

NOW = datetime(2026, 3, 4, 10, 30, tzinfo=UTC)


@pytest_asyncio.fixture
async def schedule_mgr(db):
    return ScheduleManager(db)


class TestScheduleManager:

    async def test_create_once_schedule(self, schedule_mgr: ScheduleManager):
        fire_at = NOW + timedelta(hours=2)
        schedule = await schedule_mgr.create(
            "remind", "maintenance", "once", fire_at=fire_at, now=NOW,
        )
        assert schedule.schedule_type == "once"
        assert schedule.next_fire_at == fire_at
        assert schedule.active is True
        assert schedule.priority == 1

    async def test_once_requires_fire_at(self, schedule_mgr: ScheduleManager):
        with pytest.raises(ValueError):
            await schedule_mgr.create("remind", "maintenance", "once", now=NOW)

    async def test_create_recurring_with_interval(self, schedule_mgr: ScheduleManager):
        schedule = await schedule_mgr.create(
            "reindex", "graph_reindex", "recurring", interval_seconds=3600, now=NOW,
        )
        assert schedule.next_fire_at == NOW + timedelta(hours=1)

    async def test_recurring_fire_at_overrides_first_firing(self, schedule_mgr: ScheduleManager):
        schedule = await schedule_mgr.create(
            "reindex", "graph_reindex", "recurring",
            interval_seconds=3600, fire_at=NOW, now=NOW,
        )
        assert schedule.next_fire_at == NOW

    async def test_create_recurring_with_cron(self, schedule_mgr: ScheduleManager):
        schedule = await schedule_mgr.create(
            "memo", "memo_build", "recurring", cron_expr="0 9 * * 1", now=NOW,
        )
        # Next Monday 09:00
        assert schedule.next_fire_at == datetime(2026, 3, 9, 9, 0, tzinfo=UTC)

    async def test_cron_evaluated_in_timezone(self, db):
        mgr = ScheduleManager(db, ZoneInfo("America/New_York"))
        schedule = await mgr.create(
            "memo", "memo_build", "recurring", cron_expr="0 9 * * 1", now=NOW,
        )
        # 09:00 EDT on 2026-03-09 is 13:00 UTC
        assert schedule.next_fire_at == datetime(2026, 3, 9, 13, 0, tzinfo=UTC)

    async def test_invalid_cron_rejected(self, schedule_mgr: ScheduleManager):
        with pytest.raises(ValueError):
            await schedule_mgr.create("bad", "memo_build", "recurring", cron_expr="not cron")

    async def test_recurring_needs_timing(self, schedule_mgr: ScheduleManager):
        with pytest.raises(ValueError):
            await schedule_mgr.create("bad", "memo_build", "recurring")

    async def test_ensure_is_idempotent(self, schedule_mgr: ScheduleManager):
        first = await schedule_mgr.ensure(
            "reindex", "graph_reindex", "recurring", interval_seconds=3600, now=NOW,
        )
        second = await schedule_mgr.ensure(
            "reindex", "graph_reindex", "recurring", interval_seconds=60, now=NOW,
        )
        assert second.id == first.id
        assert second.interval_seconds == 3600


class TestDueAndAdvance:

    async def test_get_due(self, schedule_mgr: ScheduleManager):
        await schedule_mgr.create("past", "maintenance", "once", fire_at=NOW - timedelta(minutes=1))
        await schedule_mgr.create("future", "maintenance", "once", fire_at=NOW + timedelta(hours=1))

        due = await schedule_mgr.get_due(NOW)
        assert [s.name for s in due] == ["past"]

    async def test_advance_once_deactivates(self, schedule_mgr: ScheduleManager):
        schedule = await schedule_mgr.create("once", "maintenance", "once", fire_at=NOW)
        await schedule_mgr.advance(schedule.id, NOW)

        updated = await schedule_mgr.get(schedule.id)
        assert updated.active is False
        assert updated.fire_count == 1
        assert updated.last_fired_at == NOW
        assert await schedule_mgr.get_due(NOW + timedelta(days=1)) == []

    async def test_advance_interval(self, schedule_mgr: ScheduleManager):
        schedule = await schedule_mgr.create(
            "tests", "test_gen", "recurring", interval_seconds=600, fire_at=NOW, now=NOW,
        )
        await schedule_mgr.advance(schedule.id, NOW)

        updated = await schedule_mgr.get(schedule.id)
        assert updated.next_fire_at == NOW + timedelta(minutes=10)
        assert updated.active is True

    async def test_advance_respects_max_fires(self, schedule_mgr: ScheduleManager):
        schedule = await schedule_mgr.create(
            "twice", "test_gen", "recurring",
            interval_seconds=600, fire_at=NOW, max_fires=2, now=NOW,
        )
        await schedule_mgr.advance(schedule.id, NOW)
        await schedule_mgr.advance(schedule.id, NOW + timedelta(minutes=10))

        updated = await schedule_mgr.get(schedule.id)
        assert updated.active is False
        assert updated.fire_count == 2

    async def test_deactivate_and_list(self, schedule_mgr: ScheduleManager):
        keep = await schedule_mgr.create("keep", "test_gen", "recurring", interval_seconds=60)
        drop = await schedule_mgr.create("drop", "test_gen", "recurring", interval_seconds=60)
        await schedule_mgr.deactivate(drop.id)

        active = await schedule_mgr.list()
        assert [s.name for s in active] == ["keep"]
        assert len(await schedule_mgr.list(active_only=False)) == 2
        assert keep.active is True


class TestTimingRules:

    def test_first_fire_once_uses_fire_at(self):
        at = NOW + timedelta(minutes=5)
        assert first_fire("once", NOW, UTC, fire_at=at) == at

    def test_first_fire_cron_after_now(self):
        # Wednesday 10:30 -> same day 12:00
        assert first_fire("recurring", NOW, UTC, cron_expr="0 12 * * *") == NOW.replace(hour=12, minute=0)

    def test_following_fire_none_when_exhausted(self):
        schedule = Schedule(
            schedule_type="recurring", interval_seconds=60, fire_count=3, max_fires=3,
        )
        assert following_fire(schedule, NOW, UTC) is None

    def test_following_fire_interval(self):
        schedule = Schedule(schedule_type="recurring", interval_seconds=60, fire_count=1)
        assert following_fire(schedule, NOW, UTC) == NOW + timedelta(minutes=1)
