"""
Shared pytest configuration for match server tests.

Each test gets its own SQLite database file (aiosqlite) unless
TEST_DATABASE_URL points somewhere else. db.AsyncSessionLocal is swapped
for a session maker bound to the test engine, so services that open their
own sessions (job handlers, background workers) hit the same database.

SQLite allows one writer at a time: tests commit their setup before calling
code that opens its own session.
"""

import os

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from raceleague.database import db
from raceleague.database.db import Base
from raceleague.services import job_queue as job_queue_module
from raceleague.services.job_queue import JobQueue
from raceleague.services.notification_sink import set_notification_sink
from raceleague.services.websocket_manager import set_websocket_manager
from raceleague.tests.factories import RecordingSink, RecordingBus


def _resolve_test_database_url(tmp_path) -> str:
    url = os.getenv("TEST_DATABASE_URL")
    if url:
        return url
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create a fresh schema on the test database for one test."""
    # NullPool avoids connection reuse across event loops
    engine = create_async_engine(
        _resolve_test_database_url(tmp_path),
        echo=False,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    test_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )
    original_async_session_local = db.AsyncSessionLocal
    db.AsyncSessionLocal = test_session_maker

    yield engine

    db.AsyncSessionLocal = original_async_session_local
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine):
    """Session for the test body; same settings as the application's."""
    async with db.AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.rollback()


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


@pytest.fixture
def sink():
    fake = RecordingSink()
    set_notification_sink(fake)
    yield fake
    set_notification_sink(None)


@pytest.fixture
def bus():
    fake = RecordingBus()
    set_websocket_manager(fake)
    yield fake
    set_websocket_manager(None)


@pytest.fixture
def queue(monkeypatch):
    """Fresh job queue installed as the global one."""
    fresh = JobQueue()
    monkeypatch.setattr(job_queue_module, "_job_queue", fresh)
    return fresh
