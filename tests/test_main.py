"""Tests for component wiring and the built-in task handlers."""

import pytest
import pytest_asyncio

from foreman.main import create_components, run_maintenance, shutdown_components
from foreman.queue.payloads import MaintenancePayload


@pytest_asyncio.fixture
async def components(settings_factory):
    comps = await create_components(settings_factory(periodic_jobs_enabled=False))
    yield comps
    await shutdown_components(comps)


class TestCreateComponents:

    async def test_builtin_handlers_registered(self, components):
        assert components["dispatcher"].registered() == ["autonomy_plan", "maintenance"]
        assert components["job_source"] is None

    async def test_host_handlers_registered(self, settings_factory):
        async def reply(payload) -> None:
            return None

        comps = await create_components(
            settings_factory(periodic_jobs_enabled=False),
            handlers={"chat_reply": reply},
        )
        try:
            assert "chat_reply" in comps["dispatcher"].registered()
        finally:
            await shutdown_components(comps)

    async def test_default_schedules_seeded(self, settings_factory):
        comps = await create_components(settings_factory())
        try:
            names = {s.name for s in await comps["schedules"].list()}
            assert "autonomy_plan_hourly" in names
        finally:
            await shutdown_components(comps)

    async def test_planner_task_runs_through_scheduler(self, components):
        queue = components["queue"]
        scheduler = components["scheduler"]
        result = await queue.enqueue("plan", "P2", {"task_type": "autonomy_plan"})

        await scheduler.heartbeat()
        await scheduler.drain()

        assert (await queue.get(result.id)).status == "done"
        window = await components["planner"].get_window(queue.now())
        assert window is not None
        assert window.consumed == 0

    async def test_unhandled_type_fails_task(self, components):
        queue = components["queue"]
        scheduler = components["scheduler"]
        result = await queue.enqueue("eval", "P1", {"task_type": "portfolio_eval"})

        await scheduler.heartbeat()
        await scheduler.drain()

        item = await queue.get(result.id)
        assert item.status == "failed"
        assert item.last_error.startswith("UnknownTaskType")


class TestRunMaintenance:

    async def test_success(self, tmp_path):
        await run_maintenance(MaintenancePayload(command="true", cwd=str(tmp_path)))

    async def test_non_zero_exit_raises(self, tmp_path):
        with pytest.raises(RuntimeError, match="exited 3"):
            await run_maintenance(MaintenancePayload(command="echo nope; exit 3", cwd=str(tmp_path)))
