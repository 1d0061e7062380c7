"""Test fixtures using a throwaway SQLite database per test."""

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from foreman.config import Settings
from foreman.queue.sessions import SessionManager
from foreman.queue.state import StateStore
from foreman.queue.tasks import TaskQueue
from foreman.storage.database import Database

# Wednesday, inside business hours
WEDNESDAY_MORNING = datetime(2026, 3, 4, 10, 30, tzinfo=UTC)


class FakeClock:
    """Settable clock injected wherever a component asks for 'now'."""

    def __init__(self, start: datetime = WEDNESDAY_MORNING) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


def _make_settings(tmp_path, **overrides) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'foreman.db'}",
        **overrides,
    )


@pytest.fixture
def settings_factory(tmp_path):
    """Build Settings pointing at this test's database, with overrides."""
    return lambda **overrides: _make_settings(tmp_path, **overrides)


@pytest.fixture
def settings(settings_factory) -> Settings:
    return settings_factory()


@pytest_asyncio.fixture
async def db(settings):
    """Function-scoped database with freshly created tables."""
    database = Database(settings)
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue(db, clock) -> TaskQueue:
    return TaskQueue(db, clock=clock)


@pytest.fixture
def sessions(settings) -> SessionManager:
    return SessionManager(settings.max_concurrent_sessions)


@pytest.fixture
def state(db) -> StateStore:
    return StateStore(db)
