"""Autonomy planner -- admits self-generated missions under an hourly budget.

Once per pass the planner pulls scored candidates from its sources, runs
each through the scope, EV, risk and budget gates, records a decision for
every candidate it looked at and enqueues the admitted ones as missions.

The decision log is the ledger. Each admission takes one unit of the
window budget in the same transaction that writes its
``queued_for_execution`` decision, so ``consumed`` always matches the log,
and overlapping passes (in this process or another) cannot overspend the
hour. Passes on one planner run one at a time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select, update

from foreman.autonomy.gates import PASS, GatePolicy, Pass, PassBudget, Reject, evaluate
from foreman.autonomy.schemas import (
    AutonomyDecision,
    Candidate,
    CandidateSource,
    DecisionKind,
    DecisionReason,
    PlannerSettings,
    PlanResult,
    WindowState,
)
from foreman.config import Settings
from foreman.queue.payloads import MissionPayload
from foreman.queue.schemas import EnqueueResult
from foreman.storage.database import Database
from foreman.storage.models import (
    AutonomyDecisionRow,
    AutonomyFailure,
    AutonomySettings,
    AutonomyWindow,
    utcnow,
)

logger = logging.getLogger(__name__)

SETTINGS_ID = "global"
MISSION_TASK_TYPE = "codex_mission"
MAX_HOURLY_BUDGET = 20

Enqueue = Callable[[str, str, Any], Awaitable[EnqueueResult]]
CountRunning = Callable[[], Awaitable[int]]


def clamp_budget(value: int) -> int:
    return max(0, min(MAX_HOURLY_BUDGET, int(value)))


def window_start_for(now: datetime) -> datetime:
    """Start of the wall-clock hour containing ``now``, in UTC."""
    return now.astimezone(UTC).replace(minute=0, second=0, microsecond=0)


def _to_decision(row: AutonomyDecisionRow) -> AutonomyDecision:
    return AutonomyDecision(
        candidate_ref=row.candidate_ref,
        source=row.source,
        decision=row.decision,
        reason=row.reason,
        ev=row.ev,
        risk_class=row.risk_class,
        budget_window=row.budget_window,
        queued_task_id=row.queued_task_id,
        created_at=row.created_at,
    )


class AutonomyPlanner:
    """Gates candidates from ``sources`` and enqueues the admitted ones.

    ``enqueue`` is the queue's enqueue operation; ``count_running`` reports
    how many missions are currently executing.
    """

    def __init__(
        self,
        database: Database,
        enqueue: Enqueue,
        settings: Settings,
        sources: Sequence[CandidateSource] = (),
        count_running: CountRunning | None = None,
    ) -> None:
        self._db = database
        self._enqueue = enqueue
        self._settings = settings
        self._sources = list(sources)
        self._count_running = count_running
        self._pass_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_settings(self) -> PlannerSettings:
        """Read the persisted switch and budget, seeding them from config."""
        async with self._db.session() as session:
            row = await session.get(AutonomySettings, SETTINGS_ID)
            if row is None:
                # Another planner may seed first; its row wins
                await session.execute(
                    self._db.insert(AutonomySettings)
                    .values(
                        id=SETTINGS_ID,
                        enabled=self._settings.autonomy_enabled,
                        hourly_budget=clamp_budget(self._settings.autonomy_hourly_budget),
                        updated_at=utcnow(),
                    )
                    .on_conflict_do_nothing(index_elements=["id"])
                )
                await session.commit()
                row = await session.get(AutonomySettings, SETTINGS_ID)
            return PlannerSettings(enabled=row.enabled, hourly_budget=clamp_budget(row.hourly_budget))

    async def update_settings(
        self,
        enabled: bool | None = None,
        hourly_budget: int | None = None,
    ) -> PlannerSettings:
        await self.get_settings()
        async with self._db.session() as session:
            row = await session.get(AutonomySettings, SETTINGS_ID)
            if enabled is not None:
                row.enabled = enabled
            if hourly_budget is not None:
                row.hourly_budget = clamp_budget(hourly_budget)
            row.updated_at = utcnow()
            await session.commit()
            logger.info(
                "Autonomy settings updated: enabled=%s budget=%d",
                row.enabled, row.hourly_budget,
            )
            return PlannerSettings(enabled=row.enabled, hourly_budget=row.hourly_budget)

    # ------------------------------------------------------------------
    # Planning pass
    # ------------------------------------------------------------------

    async def plan_hourly(self, now: datetime, interactive_pending: int) -> PlanResult:
        """Run one planning pass for the hour containing ``now``."""
        async with self._pass_lock:
            return await self._plan(now, interactive_pending)

    async def _plan(self, now: datetime, interactive_pending: int) -> PlanResult:
        settings = await self.get_settings()
        if not settings.enabled:
            await self.record_failure("planner", "autonomy_disabled")
            return PlanResult(queued=0, evaluated=0)

        threshold = self._settings.autonomy_interactive_block_threshold
        if interactive_pending >= threshold:
            await self.record_failure(
                "planner",
                "concurrent_limit",
                {"interactive_pending": interactive_pending, "threshold": threshold},
            )
            logger.info("Autonomy pass skipped: %d interactive task(s) pending", interactive_pending)
            return PlanResult(queued=0, evaluated=0)

        window = await self.ensure_window(now, settings.hourly_budget)
        running = await self._count_running() if self._count_running else 0
        available = max(
            0,
            min(
                window.budget - window.consumed,
                self._settings.autonomy_max_concurrent_missions - running,
            ),
        )

        admitted_refs = await self._admitted_refs(window.window_start)
        candidates = [
            c for c in await self._collect_candidates() if c.ref not in admitted_refs
        ]

        policy = GatePolicy(
            scope=frozenset(self._settings.autonomy_scope),
            min_ev=self._settings.autonomy_min_ev,
            require_low_risk=self._settings.autonomy_require_low_risk,
        )
        budget = PassBudget(available=available)
        evaluated = 0

        for candidate in candidates:
            outcome = evaluate(candidate, policy, budget)
            if isinstance(outcome, Pass):
                outcome = await self._admit(candidate, window.window_start, now)
            if outcome is None:
                continue
            evaluated += 1
            if isinstance(outcome, Reject):
                await self._record_decision(candidate, "dropped", outcome.reason, window.window_start)
                continue
            budget.admitted += 1

        logger.info(
            "Autonomy pass for %s: evaluated=%d queued=%d available=%d",
            window.window_start.isoformat(), evaluated, budget.admitted, available,
        )
        return PlanResult(queued=budget.admitted, evaluated=evaluated)

    async def _admit(
        self,
        candidate: Candidate,
        window_start: datetime,
        now: datetime,
    ) -> Pass | Reject | None:
        """Reserve budget for ``candidate`` and enqueue its mission.

        Returns None when an overlapping planner admitted it first; nothing
        is recorded then.
        """
        async with self._db.session() as session:
            taken = await session.scalar(
                update(AutonomyWindow)
                .where(AutonomyWindow.window_start == window_start)
                .where(AutonomyWindow.consumed < AutonomyWindow.budget)
                .values(consumed=AutonomyWindow.consumed + 1)
                .returning(AutonomyWindow.consumed)
                .execution_options(synchronize_session=False)
            )
            if taken is None:
                await session.rollback()
                return Reject("budget_exhausted")
            if await session.scalar(
                self._admitted_query(window_start)
                .where(AutonomyDecisionRow.candidate_ref == candidate.ref)
                .limit(1)
            ):
                await session.rollback()
                logger.info("Candidate %s already admitted this hour", candidate.ref)
                return None
            decision = self._decision_row(
                candidate, "queued_for_execution", "queued_for_execution", window_start
            )
            session.add(decision)
            await session.commit()

        try:
            result = await self._enqueue(
                f"autonomy:{candidate.source}:{candidate.id}:{window_start.isoformat()}",
                "P1",
                self._mission_for(candidate, now),
            )
        except Exception:
            await self._withdraw(decision.id, window_start)
            raise

        async with self._db.session() as session:
            await session.execute(
                update(AutonomyDecisionRow)
                .where(AutonomyDecisionRow.id == decision.id)
                .values(queued_task_id=result.id)
            )
            await session.commit()
        logger.debug("Candidate %s admitted as task %s", candidate.ref, result.id.hex[:8])
        return PASS

    async def _withdraw(self, decision_id: UUID, window_start: datetime) -> None:
        """Hand back a reservation whose mission never reached the queue."""
        async with self._db.session() as session:
            await session.execute(
                delete(AutonomyDecisionRow).where(AutonomyDecisionRow.id == decision_id)
            )
            await session.execute(
                update(AutonomyWindow)
                .where(AutonomyWindow.window_start == window_start)
                .values(consumed=AutonomyWindow.consumed - 1)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def _collect_candidates(self) -> list[Candidate]:
        limit = self._settings.autonomy_candidate_limit
        merged: list[Candidate] = []
        for source in self._sources:
            try:
                merged.extend(await source.list_candidates(limit))
            except Exception:
                logger.exception("Candidate source %s failed", type(source).__name__)
        merged.sort(key=lambda c: c.ev, reverse=True)
        return merged[:limit]

    def _mission_for(self, candidate: Candidate, now: datetime) -> MissionPayload:
        repo = self._settings.primary_repo_path
        return MissionPayload(
            run_id=f"run_auto_{candidate.source}_{candidate.id}_{int(now.timestamp())}",
            title=f"Autonomy mission {candidate.ref}",
            cwd=repo,
            repo_path=repo,
            domain="autonomy",
            objective=f"[Autonomy] {candidate.title}",
            request_text=(
                f"{candidate.summary}\n"
                f"Scope: {candidate.category}. Make a small, safe change and open a draft PR."
            ),
            autonomous=True,
            category=candidate.category,
            candidate_id=candidate.id,
            expected_evidence=[f"candidate:{candidate.ref}"],
            max_files=self._settings.autonomy_max_auto_pr_files,
            max_loc=self._settings.autonomy_max_auto_pr_loc,
        )

    # ------------------------------------------------------------------
    # Budget windows
    # ------------------------------------------------------------------

    async def ensure_window(self, now: datetime, budget: int) -> WindowState:
        """Create or refresh the window for ``now`` with a recounted consumed."""
        start = window_start_for(now)
        async with self._db.session() as session:
            await session.execute(
                self._db.insert(AutonomyWindow)
                .values(
                    window_start=start,
                    window_end=start + timedelta(hours=1),
                    budget=budget,
                    consumed=0,
                    created_at=utcnow(),
                )
                .on_conflict_do_nothing(index_elements=["window_start"])
            )
            row = await session.scalar(
                select(AutonomyWindow)
                .where(AutonomyWindow.window_start == start)
                .with_for_update()
            )
            row.budget = budget
            row.consumed = await session.scalar(
                select(func.count()).select_from(self._admitted_query(start).subquery())
            ) or 0
            await session.commit()
            return WindowState(
                window_start=row.window_start,
                window_end=row.window_end,
                budget=row.budget,
                consumed=row.consumed,
            )

    async def get_window(self, now: datetime) -> WindowState | None:
        async with self._db.session() as session:
            row = await session.scalar(
                select(AutonomyWindow).where(AutonomyWindow.window_start == window_start_for(now))
            )
            if row is None:
                return None
            return WindowState(
                window_start=row.window_start,
                window_end=row.window_end,
                budget=row.budget,
                consumed=row.consumed,
            )

    @staticmethod
    def _admitted_query(window_start: datetime):
        return (
            select(AutonomyDecisionRow.candidate_ref)
            .where(AutonomyDecisionRow.budget_window == window_start)
            .where(AutonomyDecisionRow.decision == "queued_for_execution")
        )

    async def _admitted_refs(self, window_start: datetime) -> set[str]:
        async with self._db.session() as session:
            refs = await session.scalars(self._admitted_query(window_start))
            return set(refs.all())

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    @staticmethod
    def _decision_row(
        candidate: Candidate,
        decision: DecisionKind,
        reason: DecisionReason,
        window_start: datetime,
    ) -> AutonomyDecisionRow:
        return AutonomyDecisionRow(
            candidate_ref=candidate.ref,
            source=candidate.source,
            decision=decision,
            reason=reason,
            ev=candidate.ev,
            risk_class=candidate.risk_class,
            budget_window=window_start,
            created_at=utcnow(),
        )

    async def _record_decision(
        self,
        candidate: Candidate,
        decision: DecisionKind,
        reason: DecisionReason,
        window_start: datetime,
    ) -> None:
        async with self._db.session() as session:
            session.add(self._decision_row(candidate, decision, reason, window_start))
            await session.commit()
        logger.debug("Candidate %s: %s (%s)", candidate.ref, decision, reason)

    async def record_failure(
        self,
        stage: str,
        reason: str,
        details: dict | None = None,
    ) -> None:
        async with self._db.session() as session:
            session.add(
                AutonomyFailure(stage=stage, reason=reason, details=details or {}, created_at=utcnow())
            )
            await session.commit()

    async def list_decisions(
        self,
        window_start: datetime | None = None,
        limit: int = 100,
    ) -> list[AutonomyDecision]:
        """Decisions newest first, optionally for one window."""
        async with self._db.session() as session:
            q = (
                select(AutonomyDecisionRow)
                .order_by(AutonomyDecisionRow.created_at.desc())
                .limit(limit)
            )
            if window_start is not None:
                q = q.where(AutonomyDecisionRow.budget_window == window_start_for(window_start))
            result = await session.execute(q)
            return [_to_decision(row) for row in result.scalars().all()]

    async def list_failures(self, limit: int = 50) -> list[dict]:
        async with self._db.session() as session:
            result = await session.execute(
                select(AutonomyFailure).order_by(AutonomyFailure.created_at.desc()).limit(limit)
            )
            return [
                {
                    "stage": row.stage,
                    "reason": row.reason,
                    "details": row.details,
                    "created_at": row.created_at,
                }
                for row in result.scalars().all()
            ]
