"""Task queue manager -- dedupe-aware enqueue and atomic claim for queued work."""

import logging
from collections.abc import Callable, Collection
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update

from foreman.queue.payloads import lane_for, payload_to_json, task_type_of
from foreman.queue.schemas import (
    RANK_PRIORITY,
    EnqueueResult,
    Lane,
    QueueItem,
    more_urgent,
    priority_rank,
)
from foreman.storage.database import Database
from foreman.storage.models import TaskRow

logger = logging.getLogger(__name__)

_NON_TERMINAL = ("queued", "running")
_CLAIM_ATTEMPTS = 5
TRIMMED_OVERFLOW = "trimmed_overflow"


def _to_item(row: TaskRow) -> QueueItem:
    return QueueItem(
        id=row.id,
        dedupe_key=row.dedupe_key,
        priority=RANK_PRIORITY[row.priority],
        payload=row.payload,
        task_type=row.task_type,
        lane=row.lane,
        status=row.status,
        created_at=row.created_at,
        updated_at=row.updated_at,
        available_at=row.available_at,
        attempts=row.attempts,
        coalesced_count=row.coalesced_count,
        last_error=row.last_error,
    )


class TaskQueue:
    """Priority queue of work items in task_queue, deduplicated by key.

    Submissions whose dedupe key matches a queued/running item touched
    within the coalesce window are folded into that item instead of
    creating a new one.
    """

    def __init__(
        self,
        database: Database,
        coalesce_window: timedelta = timedelta(minutes=15),
        interactive_task_types: Collection[str] = ("chat_reply",),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = database
        self._coalesce_window = coalesce_window
        self._interactive_types = frozenset(interactive_task_types)
        self._clock = clock or (lambda: datetime.now(UTC))

    def now(self) -> datetime:
        return self._clock()

    async def enqueue(
        self,
        dedupe_key: str,
        priority: str,
        payload: Any,
        available_at: datetime | None = None,
    ) -> EnqueueResult:
        """Create a queued item, or coalesce into a recent non-terminal duplicate."""
        if not dedupe_key:
            raise ValueError("dedupe_key must be a non-empty string")
        rank = priority_rank(priority)
        data = payload_to_json(payload)
        task_type = task_type_of(data)
        lane = lane_for(data, self._interactive_types)
        now = self.now()
        threshold = now - self._coalesce_window

        async with self._db.session() as session:
            existing = await session.scalar(
                select(TaskRow)
                .where(TaskRow.dedupe_key == dedupe_key)
                .where(TaskRow.status.in_(_NON_TERMINAL))
                .where(TaskRow.updated_at >= threshold)
                .order_by(TaskRow.updated_at.desc())
                .limit(1)
                .with_for_update()
            )
            if existing is not None:
                existing.priority = priority_rank(
                    more_urgent(RANK_PRIORITY[existing.priority], priority)
                )
                existing.payload = data
                existing.task_type = task_type
                existing.lane = lane
                existing.coalesced_count += 1
                existing.updated_at = now
                await session.commit()
                logger.debug(
                    "Coalesced %s into task %s (x%d)",
                    dedupe_key, existing.id.hex[:8], existing.coalesced_count,
                )
                return EnqueueResult(id=existing.id, coalesced=True)

            row = TaskRow(
                dedupe_key=dedupe_key,
                task_type=task_type,
                lane=lane,
                priority=rank,
                status="queued",
                payload=data,
                attempts=0,
                coalesced_count=0,
                created_at=now,
                updated_at=now,
                available_at=available_at or now,
            )
            session.add(row)
            await session.commit()
            logger.info(
                "Enqueued task %s (%s, %s, type=%s)",
                row.id.hex[:8], dedupe_key, priority, task_type,
            )
            return EnqueueResult(id=row.id, coalesced=False)

    async def claim_next(self, lane: Lane | None = None) -> QueueItem | None:
        """Atomically claim the most urgent ready item, FIFO within a priority.

        The head row is flipped to running by one conditional update, so
        two overlapping claimers can never both win the same item.
        """
        now = self.now()
        ready = select(TaskRow.id).where(TaskRow.status == "queued").where(TaskRow.available_at <= now)
        if lane is not None:
            ready = ready.where(TaskRow.lane == lane)
        head = (
            ready.order_by(TaskRow.priority, TaskRow.created_at)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        claim = (
            update(TaskRow)
            .where(TaskRow.id == head.scalar_subquery())
            .where(TaskRow.status == "queued")
            .values(status="running", attempts=TaskRow.attempts + 1, updated_at=now)
            .returning(TaskRow)
            .execution_options(synchronize_session=False)
        )

        async with self._db.session() as session:
            for _ in range(_CLAIM_ATTEMPTS):
                row = (await session.execute(claim)).scalar_one_or_none()
                if row is not None:
                    await session.commit()
                    logger.info(
                        "Claimed task %s (%s, attempt %d)",
                        row.id.hex[:8], row.dedupe_key, row.attempts,
                    )
                    return _to_item(row)
                await session.rollback()
                # Lost the race to another claimer if ready work remains
                remaining = await session.scalar(
                    select(func.count()).select_from(ready.subquery())
                )
                await session.rollback()
                if not remaining:
                    return None
        return None

    async def finalize(self, task_id: UUID, success: bool, error: str | None = None) -> None:
        """Record the terminal status of a claimed item. No retry is scheduled."""
        values: dict[str, Any] = {
            "status": "done" if success else "failed",
            "updated_at": self.now(),
        }
        if not success:
            values["last_error"] = (error or "worker_failed")[:2000]
        async with self._db.session() as session:
            await session.execute(
                update(TaskRow).where(TaskRow.id == task_id).values(**values)
            )
            await session.commit()
        if success:
            logger.info("Completed task %s", task_id.hex[:8])
        else:
            logger.warning("Failed task %s: %s", task_id.hex[:8], values["last_error"])

    async def trim_queued(self, task_type: str, keep: int) -> int:
        """Fail queued items of one type beyond the newest ``keep``."""
        now = self.now()
        async with self._db.session() as session:
            overflow = await session.scalars(
                select(TaskRow.id)
                .where(TaskRow.status == "queued")
                .where(TaskRow.task_type == task_type)
                .order_by(TaskRow.created_at.desc())
                .offset(max(0, keep))
            )
            ids = list(overflow.all())
            if not ids:
                return 0
            result = await session.execute(
                update(TaskRow)
                .where(TaskRow.id.in_(ids))
                .where(TaskRow.status == "queued")
                .values(status="failed", last_error=TRIMMED_OVERFLOW, updated_at=now)
            )
            await session.commit()
            if result.rowcount:
                logger.warning(
                    "Trimmed %d queued %s task(s) beyond cap %d",
                    result.rowcount, task_type, keep,
                )
            return result.rowcount

    async def count_ready(
        self,
        lane: Lane | None = None,
        task_types: Collection[str] | None = None,
    ) -> int:
        """Count queued items whose available_at has passed."""
        async with self._db.session() as session:
            q = (
                select(func.count())
                .select_from(TaskRow)
                .where(TaskRow.status == "queued")
                .where(TaskRow.available_at <= self.now())
            )
            if lane is not None:
                q = q.where(TaskRow.lane == lane)
            if task_types is not None:
                q = q.where(TaskRow.task_type.in_(task_types))
            return await session.scalar(q) or 0

    async def count_running(self, task_type: str | None = None) -> int:
        async with self._db.session() as session:
            q = select(func.count()).select_from(TaskRow).where(TaskRow.status == "running")
            if task_type is not None:
                q = q.where(TaskRow.task_type == task_type)
            return await session.scalar(q) or 0

    async def get(self, task_id: UUID) -> QueueItem | None:
        async with self._db.session() as session:
            row = await session.get(TaskRow, task_id)
            return _to_item(row) if row else None

    async def list(self, status: str | None = None, limit: int = 20) -> list[QueueItem]:
        """List items newest first, optionally filtered by status."""
        async with self._db.session() as session:
            q = select(TaskRow).order_by(TaskRow.created_at.desc()).limit(limit)
            if status:
                q = q.where(TaskRow.status == status)
            result = await session.execute(q)
            return [_to_item(row) for row in result.scalars().all()]

    async def count_by_status(self) -> dict[str, int]:
        async with self._db.session() as session:
            result = await session.execute(
                select(TaskRow.status, func.count()).group_by(TaskRow.status)
            )
            return dict(result.all())
