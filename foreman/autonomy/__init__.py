"""Autonomy module -- budgeted admission of self-generated missions.

Public API: AutonomyPlanner, the gate functions and the candidate DTOs.
"""

from foreman.autonomy.gates import DEFAULT_GATES, GatePolicy, Pass, PassBudget, Reject, evaluate
from foreman.autonomy.planner import AutonomyPlanner, window_start_for
from foreman.autonomy.schemas import (
    AutonomyDecision,
    Candidate,
    CandidateSource,
    PlannerSettings,
    PlanResult,
    WindowState,
    classify_category,
)

__all__ = [
    "AutonomyPlanner",
    "window_start_for",
    # Gates
    "DEFAULT_GATES",
    "GatePolicy",
    "Pass",
    "PassBudget",
    "Reject",
    "evaluate",
    # Schemas
    "AutonomyDecision",
    "Candidate",
    "CandidateSource",
    "PlannerSettings",
    "PlanResult",
    "WindowState",
    "classify_category",
]
