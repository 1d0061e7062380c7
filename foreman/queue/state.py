"""Scheduler state persistence -- mode snapshot and administrative pause."""

import logging
from datetime import UTC, datetime

from foreman.storage.database import Database
from foreman.storage.models import WorkerState

logger = logging.getLogger(__name__)


class StateStore:
    """Reads and writes the worker_state row for one scheduler."""

    def __init__(self, database: Database, worker_id: str = "global") -> None:
        self._db = database
        self._worker_id = worker_id

    async def get(self) -> WorkerState | None:
        async with self._db.session() as session:
            return await session.get(WorkerState, self._worker_id)

    async def is_paused(self) -> bool:
        state = await self.get()
        return bool(state and state.paused)

    async def set_paused(self, paused: bool) -> None:
        """Pause or resume claiming. Ticks keep running while paused."""
        async with self._db.session() as session:
            state = await session.get(WorkerState, self._worker_id)
            if state is None:
                state = WorkerState(worker_id=self._worker_id)
                session.add(state)
            state.paused = paused
            state.updated_at = datetime.now(UTC)
            await session.commit()
        logger.info("Worker %s %s", self._worker_id, "paused" if paused else "resumed")

    async def save(
        self,
        mode: str,
        heartbeat_at: datetime,
        queue_depth: int,
        active_session_ids: list[str],
    ) -> None:
        async with self._db.session() as session:
            state = await session.get(WorkerState, self._worker_id)
            if state is None:
                state = WorkerState(worker_id=self._worker_id, paused=False)
                session.add(state)
            state.mode = mode
            state.heartbeat_at = heartbeat_at
            state.queue_depth = queue_depth
            state.metadata_ = {"active_session_ids": active_session_ids}
            state.updated_at = heartbeat_at
            await session.commit()
