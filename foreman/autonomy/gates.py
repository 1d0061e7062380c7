"""Admission gates for autonomy candidates.

Each gate returns ``Pass`` or ``Reject(reason)``. ``evaluate`` applies
them in order and stops at the first rejection, so a candidate is always
recorded with the earliest reason that applies: scope, then EV, then
risk, then budget.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass

from foreman.autonomy.schemas import Candidate, DecisionReason


@dataclass(frozen=True)
class Pass:
    pass


@dataclass(frozen=True)
class Reject:
    reason: DecisionReason


PASS = Pass()
GateResult = Pass | Reject


@dataclass(frozen=True)
class GatePolicy:
    scope: frozenset[str]
    min_ev: float
    require_low_risk: bool


@dataclass
class PassBudget:
    """Admission budget for one planning pass."""

    available: int
    admitted: int = 0


Gate = Callable[[Candidate, GatePolicy, PassBudget], GateResult]


def scope_gate(candidate: Candidate, policy: GatePolicy, budget: PassBudget) -> GateResult:
    if candidate.category not in policy.scope:
        return Reject("filtered_scope")
    return PASS


def ev_gate(candidate: Candidate, policy: GatePolicy, budget: PassBudget) -> GateResult:
    if candidate.ev < policy.min_ev:
        return Reject("below_ev_threshold")
    return PASS


def risk_gate(candidate: Candidate, policy: GatePolicy, budget: PassBudget) -> GateResult:
    if policy.require_low_risk and candidate.risk_class != "low":
        return Reject("risk_blocked")
    return PASS


def budget_gate(candidate: Candidate, policy: GatePolicy, budget: PassBudget) -> GateResult:
    if budget.admitted >= budget.available:
        return Reject("budget_exhausted")
    return PASS


DEFAULT_GATES: tuple[Gate, ...] = (scope_gate, ev_gate, risk_gate, budget_gate)


def evaluate(
    candidate: Candidate,
    policy: GatePolicy,
    budget: PassBudget,
    gates: Sequence[Gate] = DEFAULT_GATES,
) -> GateResult:
    for gate in gates:
        result = gate(candidate, policy, budget)
        if isinstance(result, Reject):
            return result
    return PASS
