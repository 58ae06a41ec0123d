"""Shared fixtures for build feature tests.

The database is an in-memory SQLite engine shared across connections, and the
remote provider is replaced by an in-process fake that keeps sandbox state in
dictionaries and runs scripted commands.
"""

import datetime
from collections.abc import AsyncGenerator
from collections.abc import Awaitable
from collections.abc import Callable
from typing import Any
from uuid import UUID
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from sandcraft.db.engine.sql_engine import SqlEngine
from sandcraft.db.models import Base
from sandcraft.db.models import Project
from sandcraft.db.models import Sandbox
from sandcraft.server.features.build.agent.registry import InFlightRegistry
from sandcraft.server.features.build.sandbox.manager import SandboxHandleCache
from sandcraft.server.features.build.sandbox.manager import SandboxLifecycleManager
from tests.unit.sandcraft.server.features.build.fakes import FakeSandboxProvider


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: Any, _: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    SqlEngine.set_engine(engine)
    yield engine
    await SqlEngine.reset_engine()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return SqlEngine.get_session_factory()


@pytest_asyncio.fixture()
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def owner_id() -> UUID:
    return uuid4()


@pytest_asyncio.fixture()
async def project(db_session: AsyncSession, owner_id: UUID) -> Project:
    project = Project(owner_id=owner_id, name="todo app")
    db_session.add(project)
    await db_session.commit()
    return project


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def provider() -> FakeSandboxProvider:
    return FakeSandboxProvider()


@pytest.fixture()
def handle_cache() -> SandboxHandleCache:
    return SandboxHandleCache()


@pytest.fixture()
def registry() -> InFlightRegistry:
    return InFlightRegistry()


@pytest.fixture()
def manager(
    db_session: AsyncSession,
    provider: FakeSandboxProvider,
    handle_cache: SandboxHandleCache,
) -> SandboxLifecycleManager:
    return SandboxLifecycleManager(
        db_session, provider=provider, handle_cache=handle_cache
    )


@pytest.fixture()
def set_last_active(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[str, datetime.datetime], Awaitable[None]]:
    """Backdate a sandbox's activity timestamp."""

    async def _set(sandbox_id: str, when: datetime.datetime) -> None:
        async with session_factory() as session:
            await session.execute(
                update(Sandbox)
                .where(Sandbox.id == sandbox_id)
                .values(last_active_at=when)
            )
            await session.commit()

    return _set
