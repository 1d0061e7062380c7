"""Execution slot accounting -- a pure capacity gate for running tasks."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)


class CapacityExceeded(RuntimeError):
    """Raised when a session is started with every slot already taken."""


@dataclass(frozen=True)
class Session:
    """A lease on one unit of execution concurrency."""

    task_id: UUID
    id: UUID = field(default_factory=uuid4)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class SessionManager:
    """Tracks live sessions against a configured maximum.

    Callers check ``available_slots()`` before ``start``; starting past
    capacity is a contract violation and raises without side effects.
    ``end`` is idempotent so error paths may release twice.
    """

    def __init__(self, max_concurrent: int) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = max_concurrent
        self._live: dict[UUID, Session] = {}

    @property
    def live_count(self) -> int:
        return len(self._live)

    def available_slots(self) -> int:
        return max(0, self.max_concurrent - len(self._live))

    def start(self, task_id: UUID) -> Session:
        if len(self._live) >= self.max_concurrent:
            raise CapacityExceeded(
                f"cannot start session for task {task_id}: "
                f"{len(self._live)}/{self.max_concurrent} slots in use"
            )
        session = Session(task_id=task_id)
        self._live[session.id] = session
        logger.debug(
            "Session %s started for task %s (%d/%d)",
            session.id.hex[:8], task_id.hex[:8], len(self._live), self.max_concurrent,
        )
        return session

    def end(self, session_id: UUID) -> None:
        if self._live.pop(session_id, None) is not None:
            logger.debug("Session %s ended", session_id.hex[:8])

    def active_sessions(self) -> list[Session]:
        return sorted(self._live.values(), key=lambda s: s.started_at)
