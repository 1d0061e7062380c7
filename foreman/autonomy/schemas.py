"""Pydantic DTOs and helpers for the autonomy planner."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Literal, Protocol
from uuid import UUID

from pydantic import BaseModel

RiskClass = Literal["low", "medium", "high"]
Category = Literal["perf", "bugfix", "other"]
DecisionKind = Literal["queued_for_execution", "dropped"]
DecisionReason = Literal[
    "filtered_scope",
    "below_ev_threshold",
    "risk_blocked",
    "budget_exhausted",
    "concurrent_limit",
    "queued_for_execution",
]

_PERF_WORDS = re.compile(r"\b(perf|latency|p95|p99|throughput|benchmark|alloc|optimi[sz]e)\b")
_BUGFIX_WORDS = re.compile(
    r"\b(fix|bug|flaky|failure|failed|regression|incident|error|crash|panic|test)\b"
)


def classify_category(source: str, text: str) -> Category:
    """Derive a candidate category from its source and free text."""
    if source == "perf":
        return "perf"
    normalized = text.lower()
    if _PERF_WORDS.search(normalized):
        return "perf"
    if _BUGFIX_WORDS.search(normalized):
        return "bugfix"
    return "other"


class Candidate(BaseModel):
    """An externally scored piece of self-generated work."""

    id: str
    source: str
    title: str
    summary: str = ""
    ev: float
    risk_class: RiskClass = "medium"
    category: Category

    @property
    def ref(self) -> str:
        return f"{self.source}:{self.id}"


class CandidateSource(Protocol):
    """Supplies scored candidates; the planner never computes EV itself."""

    async def list_candidates(self, limit: int) -> list[Candidate]: ...


class PlannerSettings(BaseModel):
    enabled: bool
    hourly_budget: int


class WindowState(BaseModel):
    window_start: datetime
    window_end: datetime
    budget: int
    consumed: int


class AutonomyDecision(BaseModel):
    candidate_ref: str
    source: str
    decision: DecisionKind
    reason: DecisionReason
    ev: float
    risk_class: RiskClass
    budget_window: datetime
    queued_task_id: UUID | None = None
    created_at: datetime | None = None


class PlanResult(BaseModel):
    queued: int
    evaluated: int
