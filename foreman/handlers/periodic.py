"""Periodic job source -- fires due schedules into the task queue.

Called by the heartbeat at the start of every tick. Each due schedule is
enqueued under the stable dedupe key ``schedule:<name>``, so a burst of
ticks coalesces into one queued job, and then advanced to its next firing.

While the ready backlog is at the high watermark, or interactive work or
a mission is waiting, nothing fires and nothing advances; the schedules stay due and
fire on a later tick.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from foreman.config import Settings
from foreman.queue.schedules import ScheduleManager
from foreman.queue.schemas import RANK_PRIORITY
from foreman.queue.tasks import TaskQueue

logger = logging.getLogger(__name__)

# Queued work of these types defers periodic jobs like interactive work does
PRIORITY_TASK_TYPES = ("codex_mission",)


@dataclass(frozen=True)
class PeriodicJob:
    name: str
    task_type: str
    priority: str
    title: str
    interval_seconds: int | None = None
    cron_expr: str | None = None


DEFAULT_JOBS: tuple[PeriodicJob, ...] = (
    PeriodicJob(
        "portfolio_ranker_daily", "portfolio_eval", "P1",
        "Daily portfolio ranker", interval_seconds=24 * 3600,
    ),
    PeriodicJob(
        "test_evolution_continuous", "test_gen", "P1",
        "Continuous test evolution", interval_seconds=10 * 60,
    ),
    PeriodicJob(
        "cto_memo_weekly", "memo_build", "P2",
        "Weekly CTO memo synthesis", cron_expr="0 9 * * 1",
    ),
    PeriodicJob(
        "graph_indexer_incremental", "graph_reindex", "P2",
        "Incremental architecture graph indexer", interval_seconds=3600,
    ),
    PeriodicJob(
        "autonomy_plan_hourly", "autonomy_plan", "P2",
        "Hourly autonomy planning pass", interval_seconds=3600,
    ),
)


class PeriodicJobSource:
    """Bridges persisted schedules and ``TaskQueue.enqueue``."""

    def __init__(self, queue: TaskQueue, schedules: ScheduleManager, settings: Settings) -> None:
        self._queue = queue
        self._schedules = schedules
        self._settings = settings

    async def ensure_defaults(
        self,
        jobs: tuple[PeriodicJob, ...] = DEFAULT_JOBS,
        now: datetime | None = None,
    ) -> None:
        """Seed the built-in schedules once; existing ones keep their timing.

        Interval jobs first fire immediately, cron jobs at their next slot.
        """
        now = now or self._queue.now()
        for job in jobs:
            await self._schedules.ensure(
                job.name,
                job.task_type,
                "recurring",
                priority=job.priority,
                payload={"title": job.title},
                interval_seconds=job.interval_seconds,
                cron_expr=job.cron_expr,
                fire_at=now if job.interval_seconds else None,
                now=now,
            )

    async def enqueue_due_jobs(self, now: datetime) -> int:
        """Enqueue every due schedule. Returns the number fired."""
        due = await self._schedules.get_due(now)
        if not due:
            return 0

        depth = await self._queue.count_ready()
        urgent = await self._queue.count_ready(lane="interactive")
        urgent += await self._queue.count_ready(task_types=PRIORITY_TASK_TYPES)
        if depth >= self._settings.backlog_high_watermark or urgent > 0:
            logger.debug(
                "Deferring %d due job(s): depth=%d urgent=%d",
                len(due), depth, urgent,
            )
            return 0

        fired = 0
        for schedule in due:
            payload = {
                "cwd": self._settings.primary_repo_path,
                **schedule.payload,
                "task_type": schedule.task_type,
                "run_id": f"run_{schedule.name}_{int(now.timestamp())}",
                "trigger_source": "scheduled",
            }
            try:
                await self._queue.enqueue(
                    f"schedule:{schedule.name}",
                    RANK_PRIORITY[schedule.priority],
                    payload,
                )
                await self._schedules.advance(schedule.id, now)
            except Exception:
                logger.exception("Failed to fire schedule %s", schedule.name)
                continue
            fired += 1
            logger.debug("Fired schedule %s (%s)", schedule.name, schedule.task_type)
        return fired
