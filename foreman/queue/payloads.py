"""Task payload variants routed by ``task_type``.

Payloads are stored as plain JSON on the queue row; ``parse_payload``
turns a stored value back into one of the typed variants below. Unknown
task types keep their raw data in ``UnknownPayload`` and non-mapping
values are replaced by a ``NoopPayload`` so one bad row never wedges the
heartbeat.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Mapping
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from foreman.queue.schemas import Lane

logger = logging.getLogger(__name__)

PeriodicTaskType = Literal["portfolio_eval", "test_gen", "memo_build", "graph_reindex"]
MissionCategory = Literal["perf", "bugfix", "other"]


def _new_run_id() -> str:
    return f"run_{uuid4().hex[:12]}"


class TaskPayload(BaseModel):
    """Fields every payload variant shares."""

    model_config = ConfigDict(extra="allow")

    run_id: str = Field(default_factory=_new_run_id)
    title: str | None = None
    cwd: str | None = None
    interactive: bool = False


class ChatReplyPayload(TaskPayload):
    """A live reply to a user message (interactive lane)."""

    task_type: Literal["chat_reply"] = "chat_reply"
    interactive: bool = True
    conversation_id: str | None = None
    request_text: str = ""
    response_channel: str | None = None
    response_thread_ts: str | None = None


class MissionPayload(TaskPayload):
    task_type: Literal["codex_mission"] = "codex_mission"
    objective: str
    request_text: str = ""
    repo_path: str | None = None
    domain: str | None = None
    autonomous: bool = False
    category: MissionCategory | None = None
    candidate_id: str | None = None
    expected_evidence: list[str] = []
    max_files: int | None = None
    max_loc: int | None = None


class MaintenancePayload(TaskPayload):
    task_type: Literal["maintenance"] = "maintenance"
    command: str = "true"


class PeriodicPayload(TaskPayload):
    """Recurring background job enqueued by the periodic job source."""

    task_type: PeriodicTaskType
    trigger_source: str = "scheduled"
    repo_path: str | None = None


class PlannerPayload(TaskPayload):
    """Runs one autonomy planning pass."""

    task_type: Literal["autonomy_plan"] = "autonomy_plan"


class NoopPayload(TaskPayload):
    """Benign stand-in for a payload that could not be read."""

    task_type: Literal["noop"] = "noop"
    reason: str = "malformed payload"


class UnknownPayload(BaseModel):
    """Unknown or legacy task type; carries the stored data untouched."""

    task_type: str | None = None
    raw: dict[str, Any] = {}

    @property
    def run_id(self) -> str:
        return str(self.raw.get("run_id", ""))

    @property
    def cwd(self) -> str | None:
        return self.raw.get("cwd")


KnownPayload = Annotated[
    Union[
        ChatReplyPayload,
        MissionPayload,
        MaintenancePayload,
        PeriodicPayload,
        PlannerPayload,
        NoopPayload,
    ],
    Field(discriminator="task_type"),
]
Payload = Union[
    ChatReplyPayload,
    MissionPayload,
    MaintenancePayload,
    PeriodicPayload,
    PlannerPayload,
    NoopPayload,
    UnknownPayload,
]

_KNOWN = TypeAdapter(KnownPayload)


def parse_payload(raw: Any, run_id: str | None = None) -> Payload:
    """Map a stored payload to its variant. Never raises.

    A mapping without ``task_type`` is treated as maintenance work.
    ``run_id`` fills in a missing run id (callers pass the queue item id).
    """
    if not isinstance(raw, Mapping):
        logger.warning("Malformed payload of type %s replaced with no-op", type(raw).__name__)
        return NoopPayload(
            run_id=run_id or _new_run_id(),
            title="Recovered malformed queue payload",
        )

    data = dict(raw)
    data.setdefault("task_type", "maintenance")
    if run_id and not data.get("run_id"):
        data["run_id"] = run_id
    try:
        return _KNOWN.validate_python(data)
    except ValidationError as exc:
        logger.debug("Payload for task_type=%s not recognised: %s", data["task_type"], exc)
        return UnknownPayload(task_type=str(data["task_type"]), raw=data)


def payload_to_json(payload: Any) -> Any:
    """Normalise a caller-supplied payload to JSON-compatible data."""
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json", exclude_none=True)
    return payload


def task_type_of(raw: Any) -> str | None:
    if isinstance(raw, Mapping):
        value = raw.get("task_type")
        return str(value) if value is not None else None
    return None


def lane_for(raw: Any, interactive_task_types: Collection[str]) -> Lane:
    """Classify a payload into the interactive or background lane."""
    if isinstance(raw, Mapping):
        if raw.get("interactive") is True:
            return "interactive"
        if raw.get("task_type") in interactive_task_types:
            return "interactive"
    return "background"
