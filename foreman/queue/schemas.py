"""Pydantic DTOs for the task queue.

These models define the public contract for the queue module.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel

Priority = Literal["P0", "P1", "P2"]
TaskStatus = Literal["queued", "running", "done", "failed"]
Lane = Literal["interactive", "background"]
SchedulerMode = Literal["active", "idle", "off-hours"]

# Numerically lower wins
PRIORITY_RANK: dict[str, int] = {"P0": 0, "P1": 1, "P2": 2}
RANK_PRIORITY: dict[int, str] = {rank: name for name, rank in PRIORITY_RANK.items()}


def priority_rank(priority: str) -> int:
    try:
        return PRIORITY_RANK[priority]
    except KeyError:
        raise ValueError(f"unknown priority {priority!r}, expected one of P0, P1, P2") from None


def more_urgent(current: str, incoming: str) -> str:
    """Return whichever of two priorities is more urgent."""
    return incoming if priority_rank(incoming) < priority_rank(current) else current


class QueueItem(BaseModel):
    """One unit of dispatchable work as seen by callers."""

    id: UUID
    dedupe_key: str
    priority: Priority
    payload: Any
    task_type: str | None = None
    lane: Lane = "background"
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    available_at: datetime
    attempts: int = 0
    coalesced_count: int = 0
    last_error: str | None = None


class EnqueueResult(BaseModel):
    id: UUID
    coalesced: bool
