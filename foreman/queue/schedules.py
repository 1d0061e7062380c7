"""Named schedules that feed periodic work into the task queue.

A schedule is either ``once`` (fires at ``fire_at`` and retires) or
``recurring`` (every ``interval_seconds``, or on a cron expression read in
the manager's business timezone). ``max_fires`` retires any schedule after
that many firings.
"""

import logging
from datetime import UTC, datetime, timedelta, tzinfo
from typing import Any
from uuid import UUID

from croniter import croniter
from sqlalchemy import select, update

from foreman.queue.schemas import priority_rank
from foreman.storage.database import Database
from foreman.storage.models import Schedule

logger = logging.getLogger(__name__)


def cron_after(expr: str, after: datetime, tz: tzinfo) -> datetime:
    """Next cron match strictly after ``after``, returned in UTC."""
    local = croniter(expr, after.astimezone(tz)).get_next(datetime)
    return local.astimezone(UTC)


def first_fire(
    schedule_type: str,
    now: datetime,
    tz: tzinfo,
    fire_at: datetime | None = None,
    interval_seconds: int | None = None,
    cron_expr: str | None = None,
) -> datetime:
    """When a new schedule fires first. Raises ValueError on bad timing."""
    if schedule_type == "once":
        if fire_at is None:
            raise ValueError("Once schedule needs fire_at")
        return fire_at
    if cron_expr:
        if not croniter.is_valid(cron_expr):
            raise ValueError(f"Invalid cron expression: {cron_expr!r}")
        return fire_at or cron_after(cron_expr, now, tz)
    if interval_seconds:
        return fire_at or now + timedelta(seconds=interval_seconds)
    raise ValueError("Recurring schedule needs interval_seconds or cron_expr")


def following_fire(schedule: Schedule, fired_at: datetime, tz: tzinfo) -> datetime | None:
    """Next firing after one at ``fired_at``; None once the schedule is spent."""
    if schedule.max_fires and schedule.fire_count >= schedule.max_fires:
        return None
    if schedule.schedule_type == "once":
        return None
    if schedule.cron_expr:
        return cron_after(schedule.cron_expr, fired_at, tz)
    if schedule.interval_seconds:
        return fired_at + timedelta(seconds=schedule.interval_seconds)
    return None


class ScheduleManager:
    def __init__(self, database: Database, timezone: tzinfo = UTC) -> None:
        self._db = database
        self._tz = timezone

    async def create(
        self,
        name: str,
        task_type: str,
        schedule_type: str,
        priority: str = "P1",
        payload: dict[str, Any] | None = None,
        fire_at: datetime | None = None,
        interval_seconds: int | None = None,
        cron_expr: str | None = None,
        max_fires: int | None = None,
        now: datetime | None = None,
    ) -> Schedule:
        """Insert a schedule.

        A recurring schedule without ``fire_at`` first fires one interval
        (or the next cron match) after ``now``.
        """
        created = now or datetime.now(UTC)
        schedule = Schedule(
            name=name,
            task_type=task_type,
            priority=priority_rank(priority),
            payload=payload or {},
            schedule_type=schedule_type,
            fire_at=fire_at,
            interval_seconds=interval_seconds,
            cron_expr=cron_expr,
            next_fire_at=first_fire(
                schedule_type, created, self._tz, fire_at, interval_seconds, cron_expr
            ),
            active=True,
            fire_count=0,
            max_fires=max_fires,
            created_at=created,
        )
        async with self._db.session() as session:
            session.add(schedule)
            await session.commit()
            await session.refresh(schedule)
        logger.info(
            "Schedule %s -> %s (%s), first fire %s",
            name, task_type, schedule_type, schedule.next_fire_at,
        )
        return schedule

    async def ensure(self, name: str, task_type: str, schedule_type: str, **kwargs: Any) -> Schedule:
        """Return the schedule called ``name``, creating it on first use."""
        return await self.get_by_name(name) or await self.create(
            name, task_type, schedule_type, **kwargs
        )

    async def get_due(self, now: datetime) -> list[Schedule]:
        """Active schedules due at ``now``, oldest firing first."""
        stmt = (
            select(Schedule)
            .where(Schedule.active.is_(True), Schedule.next_fire_at <= now)
            .order_by(Schedule.next_fire_at)
        )
        async with self._db.session() as session:
            return list(await session.scalars(stmt))

    async def advance(self, schedule_id: UUID, fired_at: datetime) -> None:
        """Count a firing and move ``next_fire_at`` on, retiring spent schedules."""
        async with self._db.session() as session:
            schedule = await session.get(Schedule, schedule_id)
            if schedule is None:
                logger.warning("Advance on unknown schedule %s", schedule_id.hex[:8])
                return
            schedule.fire_count += 1
            schedule.last_fired_at = fired_at
            schedule.next_fire_at = following_fire(schedule, fired_at, self._tz)
            schedule.active = schedule.next_fire_at is not None
            await session.commit()
            if schedule.active:
                logger.debug("Schedule %s fired (#%d), next %s",
                             schedule.name, schedule.fire_count, schedule.next_fire_at)
            else:
                logger.info("Schedule %s retired after %d firing(s)",
                            schedule.name, schedule.fire_count)

    async def deactivate(self, schedule_id: UUID) -> None:
        async with self._db.session() as session:
            await session.execute(
                update(Schedule).where(Schedule.id == schedule_id).values(active=False)
            )
            await session.commit()
        logger.info("Deactivated schedule %s", schedule_id.hex[:8])

    async def get(self, schedule_id: UUID) -> Schedule | None:
        async with self._db.session() as session:
            return await session.get(Schedule, schedule_id)

    async def get_by_name(self, name: str) -> Schedule | None:
        async with self._db.session() as session:
            return await session.scalar(select(Schedule).where(Schedule.name == name))

    async def list(self, active_only: bool = True, limit: int = 50) -> list[Schedule]:
        stmt = select(Schedule).order_by(Schedule.created_at.desc()).limit(limit)
        if active_only:
            stmt = stmt.where(Schedule.active.is_(True))
        async with self._db.session() as session:
            return list(await session.scalars(stmt))
