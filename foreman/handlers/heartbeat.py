"""Heartbeat Scheduler -- drives the claim -> execute -> finalize loop.

Each tick:
1. Trims overflowing maintenance queues and asks the periodic job source
   to enqueue due jobs
2. Computes the operating mode (active / idle / off-hours) and persists a
   state snapshot
3. Unless paused, claims up to the free slots of ready work, one slot
   reserved for the interactive lane, and starts each item in the
   background under a session
4. Persists the post-run snapshot and re-arms its timer for the mode's
   interval

Ticks never overlap. A heartbeat requested while one is in flight sets a
pending flag and a single follow-up tick runs as soon as it finishes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Collection
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Protocol
from zoneinfo import ZoneInfo

from foreman.audit import AuditLog, AuditRecord
from foreman.config import Settings
from foreman.events import Event, EventBus
from foreman.queue.payloads import Payload, parse_payload
from foreman.queue.schemas import QueueItem, SchedulerMode
from foreman.queue.sessions import CapacityExceeded, Session, SessionManager
from foreman.queue.state import StateStore
from foreman.queue.tasks import TaskQueue

logger = logging.getLogger(__name__)


class JobSource(Protocol):
    async def enqueue_due_jobs(self, now: datetime) -> int: ...


# ------------------------------------------------------------------
# Mode selection
# ------------------------------------------------------------------


@dataclass(frozen=True)
class BusinessHours:
    start_hour: int = 8
    end_hour: int = 18
    days: Collection[int] = (1, 2, 3, 4, 5)  # ISO weekdays
    timezone: tzinfo = ZoneInfo("UTC")

    @classmethod
    def from_settings(cls, settings: Settings) -> BusinessHours:
        return cls(
            start_hour=settings.business_hours_start,
            end_hour=settings.business_hours_end,
            days=tuple(settings.business_days),
            timezone=ZoneInfo(settings.business_timezone),
        )


def is_off_hours(now: datetime, hours: BusinessHours) -> bool:
    local = now.astimezone(hours.timezone)
    if local.isoweekday() not in hours.days:
        return True
    return local.hour < hours.start_hour or local.hour >= hours.end_hour


def select_mode(
    now: datetime,
    has_ready_work: bool,
    has_active_incident: bool,
    hours: BusinessHours,
) -> SchedulerMode:
    """Pure mode function, evaluated fresh every tick."""
    if has_ready_work or has_active_incident:
        return "active"
    if is_off_hours(now, hours):
        return "off-hours"
    return "idle"


def interval_for(mode: SchedulerMode, settings: Settings) -> float:
    """Seconds until the next tick in ``mode``."""
    return {
        "active": settings.heartbeat_active_seconds,
        "idle": settings.heartbeat_idle_seconds,
        "off-hours": settings.heartbeat_off_hours_seconds,
    }[mode]


# ------------------------------------------------------------------
# Scheduler
# ------------------------------------------------------------------


class HeartbeatScheduler:
    """Timer-driven scheduler owning one queue, one slot pool and its state.

    ``handler`` receives the parsed payload of each claimed item; raising
    marks the item failed. Items always reach finalize and release their
    session, whatever the handler does.
    """

    def __init__(
        self,
        queue: TaskQueue,
        sessions: SessionManager,
        state: StateStore,
        handler: Callable[[Payload], Awaitable[None]],
        settings: Settings,
        *,
        job_source: JobSource | None = None,
        audit: AuditLog | None = None,
        bus: EventBus | None = None,
        incident_probe: Callable[[], Awaitable[bool]] | None = None,
    ) -> None:
        self._queue = queue
        self._sessions = sessions
        self._state = state
        self._handler = handler
        self._settings = settings
        self._job_source = job_source
        self._audit = audit
        self._bus = bus
        self._incident_probe = incident_probe
        self._hours = BusinessHours.from_settings(settings)

        self.mode: SchedulerMode = "idle"
        self._started = False
        self._stopped = False
        self._running = False
        self._pending = False
        self._timer: asyncio.TimerHandle | None = None
        self._followup: asyncio.Task | None = None
        self._ticks: set[asyncio.Task] = set()
        self._inflight: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        """True while a tick is executing."""
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Run the first tick immediately; later ticks follow the timer."""
        if self._started:
            return
        self._started = True
        self._stopped = False
        logger.info(
            "Heartbeat scheduler started (slots=%d, per_tick=%d)",
            self._sessions.max_concurrent,
            self._settings.max_tasks_per_heartbeat,
        )
        await self._run_tracked_tick("heartbeat-start")

    async def stop(self) -> None:
        """Disarm the timer and cancel in-flight work.

        Cancelled items are still finalized as failed and release their
        slots before this returns. No tick runs after it returns.
        """
        self._started = False
        self._stopped = True
        self._pending = False
        self._cancel_timer()
        while self._ticks or self._inflight:
            pending = [*self._ticks, *self._inflight]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Heartbeat scheduler stopped")

    async def poke(self) -> None:
        """Tick now instead of waiting for the timer (e.g. new chat message)."""
        if not self._started:
            return
        self._cancel_timer()
        await self._run_tracked_tick("heartbeat-poke")

    async def drain(self) -> None:
        """Wait until every in-flight item has finalized."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def heartbeat(self) -> None:
        """Single entry point for a tick; re-entrant calls only set pending."""
        if self._running:
            self._pending = True
            return
        self._running = True
        try:
            await self._tick()
        except Exception:
            logger.exception("Heartbeat tick failed")
        finally:
            self._running = False
            self._schedule_next()
            if self._pending and not self._stopped:
                self._pending = False
                self._followup = self._spawn_tick("heartbeat-followup")

    async def _tick(self) -> None:
        now = self._queue.now()
        await self._trim_queues()
        await self._enqueue_due_jobs(now)

        paused = await self._state.is_paused()
        depth = await self._queue.count_ready()
        incident = await self._has_active_incident()
        self.mode = select_mode(now, depth > 0, incident, self._hours)
        await self._save_state(now, depth)

        started = 0
        if not paused:
            try:
                started = await self._dispatch_ready()
            except Exception:
                logger.exception("Claiming ready work failed")
        else:
            logger.debug("Worker paused, not claiming (depth=%d)", depth)

        post_now = self._queue.now()
        post_depth = await self._queue.count_ready()
        await self._save_state(post_now, post_depth)
        await self._emit(
            "heartbeat",
            None,
            mode=self.mode,
            queue_depth=post_depth,
            started=started,
            paused=paused,
        )

    async def _trim_queues(self) -> None:
        for task_type, keep in self._settings.trim_caps.items():
            try:
                await self._queue.trim_queued(task_type, keep)
            except Exception:
                logger.exception("Failed to trim queued %s tasks", task_type)

    async def _enqueue_due_jobs(self, now: datetime) -> None:
        if self._job_source is None:
            return
        try:
            fired = await self._job_source.enqueue_due_jobs(now)
            if fired:
                logger.info("Enqueued %d due periodic job(s)", fired)
        except Exception:
            logger.exception("Periodic job source failed")

    async def _has_active_incident(self) -> bool:
        if self._incident_probe is None:
            return False
        try:
            return bool(await self._incident_probe())
        except Exception:
            logger.warning("Incident probe failed, assuming no incident", exc_info=True)
            return False

    async def _save_state(self, at: datetime, depth: int) -> None:
        await self._state.save(
            mode=self.mode,
            heartbeat_at=at,
            queue_depth=depth,
            active_session_ids=[s.id.hex for s in self._sessions.active_sessions()],
        )

    # ------------------------------------------------------------------
    # Claiming and execution
    # ------------------------------------------------------------------

    async def _dispatch_ready(self) -> int:
        """Claim and start work for the free slots. Returns items started."""
        per_tick = self._settings.max_tasks_per_heartbeat
        available = self._sessions.available_slots()
        slots = min(per_tick, available)
        if slots <= 0:
            return 0

        started = 0
        # One slot belongs to the interactive lane regardless of priority
        interactive = await self._queue.claim_next(lane="interactive")
        if interactive is not None:
            self._launch(interactive)
            started += 1
            general = slots - 1
        else:
            # Keep the interactive slot free for chat that arrives before the next tick
            general = min(per_tick, available - 1)

        for _ in range(general):
            item = await self._queue.claim_next()
            if item is None:
                break
            self._launch(item)
            started += 1
        return started

    def _launch(self, item: QueueItem) -> None:
        try:
            session = self._sessions.start(item.id)
        except CapacityExceeded:
            logger.error("No slot for claimed task %s; failing it", item.id.hex[:8])
            task = asyncio.create_task(
                self._queue.finalize(item.id, False, "capacity_exceeded"),
                name=f"finalize-{item.id.hex[:8]}",
            )
        else:
            task = asyncio.create_task(
                self._execute(item, session), name=f"task-{item.id.hex[:8]}"
            )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _execute(self, item: QueueItem, session: Session) -> None:
        payload = parse_payload(item.payload, run_id=str(item.id))
        task_type = payload.task_type or "unknown"
        started_at = self._queue.now()
        error: str | None = None
        logger.info(
            "Executing task %s type=%s run=%s",
            item.id.hex[:8], task_type, payload.run_id,
        )
        await self._emit("task_started", item, task_type=task_type)

        try:
            await self._handler(payload)
        except asyncio.CancelledError:
            error = "cancelled"
            raise
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.exception("Task %s failed", item.id.hex[:8])
        finally:
            try:
                await self._queue.finalize(item.id, error is None, error)
            except Exception:
                logger.exception("Could not finalize task %s", item.id.hex[:8])
            finally:
                self._sessions.end(session.id)
            await self._record_audit(payload, task_type, started_at, error)
            await self._emit(
                "task_completed" if error is None else "task_failed",
                item,
                task_type=task_type,
                error=error,
            )

    async def _record_audit(
        self,
        payload: Payload,
        task_type: str,
        started_at: datetime,
        error: str | None,
    ) -> None:
        if self._audit is None:
            return
        try:
            await self._audit.append(AuditRecord(
                run_id=payload.run_id,
                command=f"internal:{task_type}",
                cwd=payload.cwd or self._settings.primary_repo_path,
                started_at=started_at,
                finished_at=self._queue.now(),
                exit_code=0 if error is None else 1,
                artifact_refs=[f"task_type={task_type}"] if error is None else [error[:500]],
            ))
        except Exception:
            logger.warning("Audit write failed for run %s", payload.run_id, exc_info=True)

    # ------------------------------------------------------------------
    # Timer and events
    # ------------------------------------------------------------------

    async def _run_tracked_tick(self, name: str) -> None:
        # Tracked so stop() can cancel it; cancellation ends the wait quietly
        await asyncio.gather(self._spawn_tick(name), return_exceptions=True)

    def _spawn_tick(self, name: str) -> asyncio.Task:
        task = asyncio.create_task(self.heartbeat(), name=name)
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)
        return task

    def _schedule_next(self) -> None:
        if not self._started:
            return
        self._cancel_timer()
        delay = interval_for(self.mode, self._settings)
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._spawn_tick, "heartbeat")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _emit(self, event_type: str, item: QueueItem | None, **data: object) -> None:
        if self._bus is None:
            return
        if item is not None:
            data["dedupe_key"] = item.dedupe_key
            data["priority"] = item.priority
        await self._bus.emit(Event(
            type=event_type,
            worker_id=self._settings.worker_id,
            task_id=item.id.hex if item is not None else None,
            data={k: v for k, v in data.items() if v is not None},
        ))
