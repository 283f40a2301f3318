"""Root conftest for engine, repository and API tests.

Provides:
- In-memory SQLite database (replaces the production engine)
- A RunManager wired to SqlRunStore and in-process fakes
- An httpx AsyncClient bound to the FastAPI app via ASGITransport
"""

from __future__ import annotations

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

import graphflow_api.database as db_module
from graphflow_api.database import Base

# Import all ORM models so they register with Base.metadata
import graphflow_api.models.db  # noqa: F401

# Register node types
import graphflow.nodes  # noqa: F401

from graphflow.engine.manager import RunManager
from graphflow_api.dependencies import get_bus
from graphflow_api.event_bus import EventBus, bridge_manager
from graphflow_api.store import SqlRunStore
from tests.factories import FakeLauncher, FakeTaskCreator


# ---------------------------------------------------------------------------
# In-memory async SQLite engine (StaticPool shares one connection)
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create an in-memory SQLite engine for one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def test_session(test_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Per-test database session with automatic rollback."""
    factory = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False,
    )
    async with factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def patched_db(test_engine: AsyncEngine) -> AsyncGenerator[AsyncEngine, None]:
    """Point graphflow_api.database at the test engine.

    Every get_session()/get_session_ctx() call (routes, SqlRunStore) then
    uses the in-memory database.
    """
    original_engine = db_module.engine
    original_factory = db_module.async_session_factory

    db_module.engine = test_engine
    db_module.async_session_factory = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False,
    )
    try:
        yield test_engine
    finally:
        db_module.engine = original_engine
        db_module.async_session_factory = original_factory


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def task_creator() -> FakeTaskCreator:
    return FakeTaskCreator()


# ---------------------------------------------------------------------------
# FastAPI test client with a SQL-backed run manager
# ---------------------------------------------------------------------------

@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest_asyncio.fixture
async def sql_manager(patched_db, launcher, task_creator, event_bus) -> AsyncGenerator[RunManager, None]:
    manager = RunManager(store=SqlRunStore(), launcher=launcher, task_creator=task_creator)
    unsubscribe = bridge_manager(manager, event_bus)
    await manager.start()
    yield manager
    unsubscribe()
    await manager.stop()


@pytest_asyncio.fixture
async def client(sql_manager: RunManager, event_bus: EventBus) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing FastAPI routes.

    ASGITransport does not run the lifespan, so the manager is installed on
    app.state directly.
    """
    from graphflow_api.main import app

    app.state.manager = sql_manager
    app.dependency_overrides[get_bus] = lambda: event_bus
    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
    finally:
        app.state.manager = None
        app.dependency_overrides.pop(get_bus, None)
