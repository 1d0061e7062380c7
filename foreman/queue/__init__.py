"""Queue module -- deduplicating task queue, execution slots and scheduler state.

Public API: TaskQueue, SessionManager, StateStore, ScheduleManager and the
payload/schema types.
"""

from foreman.queue.payloads import (
    ChatReplyPayload,
    MaintenancePayload,
    MissionPayload,
    NoopPayload,
    Payload,
    PeriodicPayload,
    PlannerPayload,
    UnknownPayload,
    lane_for,
    parse_payload,
)
from foreman.queue.schedules import ScheduleManager
from foreman.queue.schemas import (
    EnqueueResult,
    Lane,
    Priority,
    QueueItem,
    SchedulerMode,
    TaskStatus,
)
from foreman.queue.sessions import CapacityExceeded, Session, SessionManager
from foreman.queue.state import StateStore
from foreman.queue.tasks import TRIMMED_OVERFLOW, TaskQueue

__all__ = [
    "TaskQueue",
    "SessionManager",
    "Session",
    "CapacityExceeded",
    "StateStore",
    "ScheduleManager",
    "TRIMMED_OVERFLOW",
    # Schemas
    "EnqueueResult",
    "Lane",
    "Priority",
    "QueueItem",
    "SchedulerMode",
    "TaskStatus",
    # Payloads
    "ChatReplyPayload",
    "MaintenancePayload",
    "MissionPayload",
    "NoopPayload",
    "Payload",
    "PeriodicPayload",
    "PlannerPayload",
    "UnknownPayload",
    "lane_for",
    "parse_payload",
]
