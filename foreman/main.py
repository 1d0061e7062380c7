"""Foreman worker entry point.

Initializes all components and runs the heartbeat until signalled:
  Settings -> Database -> TaskQueue -> Sessions/State/Audit -> EventBus
  -> Schedules -> PeriodicJobSource -> AutonomyPlanner -> Dispatcher
  -> HeartbeatScheduler

Hosts embed Foreman by calling ``create_components`` with their own task
handlers and candidate sources.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Mapping, Sequence
from datetime import timedelta
from zoneinfo import ZoneInfo

import httpx

from foreman.audit import AuditLog
from foreman.autonomy.planner import AutonomyPlanner
from foreman.autonomy.schemas import CandidateSource
from foreman.config import Settings
from foreman.events import EventBus
from foreman.handlers.dispatch import TaskDispatcher, TaskHandler
from foreman.handlers.heartbeat import HeartbeatScheduler
from foreman.handlers.notifier import FailureNotifier
from foreman.handlers.periodic import PeriodicJobSource
from foreman.queue.payloads import MaintenancePayload, PlannerPayload
from foreman.queue.schedules import ScheduleManager
from foreman.queue.sessions import SessionManager
from foreman.queue.state import StateStore
from foreman.queue.tasks import TaskQueue
from foreman.storage.database import Database

logger = logging.getLogger(__name__)


async def run_maintenance(payload: MaintenancePayload) -> None:
    """Run a maintenance shell command; a non-zero exit fails the task."""
    proc = await asyncio.create_subprocess_shell(
        payload.command,
        cwd=payload.cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    output, _ = await proc.communicate()
    if proc.returncode != 0:
        tail = output.decode(errors="replace")[-500:]
        raise RuntimeError(f"maintenance command exited {proc.returncode}: {tail}")


async def create_components(
    settings: Settings,
    handlers: Mapping[str, TaskHandler] | None = None,
    candidate_sources: Sequence[CandidateSource] = (),
) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for shutdown. The scheduler is
    created but not started.
    """
    database = Database(settings)
    await database.connect()

    queue = TaskQueue(
        database,
        coalesce_window=timedelta(seconds=settings.coalesce_window_seconds),
        interactive_task_types=settings.interactive_task_types,
    )
    sessions = SessionManager(settings.max_concurrent_sessions)
    state = StateStore(database, settings.worker_id)
    audit = AuditLog(database)

    bus = EventBus()
    handler_http = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=5, read=settings.notify_timeout, write=5, pool=5),
    )
    FailureNotifier(bus, settings, handler_http)
    await bus.start()

    schedules = ScheduleManager(database, ZoneInfo(settings.business_timezone))
    job_source = None
    if settings.periodic_jobs_enabled:
        job_source = PeriodicJobSource(queue, schedules, settings)
        await job_source.ensure_defaults()

    planner = AutonomyPlanner(
        database,
        queue.enqueue,
        settings,
        sources=candidate_sources,
        count_running=lambda: queue.count_running("codex_mission"),
    )

    async def run_planner(payload: PlannerPayload) -> None:
        pending = await queue.count_ready(lane="interactive")
        await planner.plan_hourly(queue.now(), interactive_pending=pending)

    dispatcher = TaskDispatcher()
    dispatcher.register("autonomy_plan", run_planner)
    dispatcher.register("maintenance", run_maintenance)
    for task_type, handler in (handlers or {}).items():
        dispatcher.register(task_type, handler)

    scheduler = HeartbeatScheduler(
        queue,
        sessions,
        state,
        dispatcher.dispatch,
        settings,
        job_source=job_source,
        audit=audit,
        bus=bus,
    )

    return {
        "database": database,
        "queue": queue,
        "sessions": sessions,
        "state": state,
        "audit": audit,
        "bus": bus,
        "handler_http": handler_http,
        "schedules": schedules,
        "job_source": job_source,
        "planner": planner,
        "dispatcher": dispatcher,
        "scheduler": scheduler,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Foreman...")

    scheduler = components.get("scheduler")
    if scheduler:
        await scheduler.stop()

    bus = components.get("bus")
    if bus:
        await bus.stop()

    handler_http = components.get("handler_http")
    if handler_http:
        await handler_http.aclose()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Foreman shutdown complete.")


async def run(settings: Settings) -> None:
    components = await create_components(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await components["scheduler"].start()
        logger.info(
            "Foreman started: worker=%s handlers=%s",
            settings.worker_id, ", ".join(components["dispatcher"].registered()),
        )
        await stop.wait()
    finally:
        await shutdown_components(components)


def main() -> None:
    """Entry point -- parse settings, run the worker until signalled."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
