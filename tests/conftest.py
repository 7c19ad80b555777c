"""Test fixtures — an isolated SQLite queue per test.

Learn: Every test gets its own database file under tmp_path, so notifiers
running in background tasks never see another test's messages. Each store
call opens its own connection (NullPool), which makes SQLite behave like a
shared database with several concurrent clients — the same shape as a
fleet of notifiers on PostgreSQL.
"""

import asyncio
import time

import pytest
import pytest_asyncio
import structlog

from herald.config import Settings
from herald.db.engine import create_engine, create_schema, create_session_factory
from herald.notifications.manager import Manager
from herald.notifications.store import NotificationStore
from herald.notifications.wake import MemoryWakeChannel

from fakes import FakeDispatcher


@pytest.fixture(autouse=True)
def reset_structlog():
    """CLI and logging tests reconfigure structlog against captured streams."""
    yield
    structlog.reset_defaults()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'herald.db'}",
        wake_backend="memory",
        lease_count=10,
        lease_seconds=5.0,
        max_send_attempts=3,
        fetch_interval=0.5,
        shutdown_timeout=5.0,
    )


@pytest_asyncio.fixture()
async def engine(settings):
    engine = create_engine(settings.database_url)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def store(engine, settings) -> NotificationStore:
    return NotificationStore(
        create_session_factory(engine), max_attempts=settings.max_send_attempts
    )


@pytest.fixture()
def wake() -> MemoryWakeChannel:
    return MemoryWakeChannel()


@pytest_asyncio.fixture()
async def make_manager(settings, store, wake):
    """Build managers that are always stopped after the test."""
    managers: list[Manager] = []

    def _make(registry=None, **overrides) -> Manager:
        cfg = settings.model_copy(update=overrides) if overrides else settings
        manager = Manager(cfg, store, wake, registry)
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        await manager.stop()


@pytest.fixture()
def eventually():
    """Poll an (a)sync predicate until it holds or the timeout passes."""

    async def _eventually(predicate, timeout: float = 5.0, interval: float = 0.02):
        deadline = time.monotonic() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return
            if time.monotonic() > deadline:
                raise AssertionError(f"condition not met within {timeout}s")
            await asyncio.sleep(interval)

    return _eventually


@pytest.fixture()
def fake_dispatcher() -> FakeDispatcher:
    return FakeDispatcher()
