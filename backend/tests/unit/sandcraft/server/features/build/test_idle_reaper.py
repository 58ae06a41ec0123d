"""Unit tests for the idle sandbox reaper.

Timestamps are backdated in the database instead of sleeping, with the
thresholds probed one second either side.
"""

import asyncio
import datetime
from collections.abc import Awaitable
from collections.abc import Callable
from uuid import UUID

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.ext.asyncio import AsyncSession

from sandcraft.db.enums import SandboxState
from sandcraft.db.models import Project
from sandcraft.server.features.build.agent.registry import InFlightRegistry
from sandcraft.server.features.build.db.project import create_project
from sandcraft.server.features.build.db.sandbox import get_sandbox_by_id
from sandcraft.server.features.build.sandbox.manager import SandboxHandleCache
from sandcraft.server.features.build.sandbox.manager import SandboxLifecycleManager
from sandcraft.server.features.build.sandbox.tasks.cleanup import SandboxIdleReaper
from tests.unit.sandcraft.server.features.build.fakes import FakeSandboxProvider
from tests.unit.sandcraft.server.features.build.fakes import utc_now

IDLE_TIMEOUT = 900
MAX_HIBERNATION = 3600

SetLastActive = Callable[[str, datetime.datetime], Awaitable[None]]


@pytest.fixture()
def reaper(
    session_factory: async_sessionmaker[AsyncSession],
    provider: FakeSandboxProvider,
    handle_cache: SandboxHandleCache,
    registry: InFlightRegistry,
) -> SandboxIdleReaper:
    return SandboxIdleReaper(
        session_factory,
        provider=provider,
        handle_cache=handle_cache,
        registry=registry,
        idle_timeout_seconds=IDLE_TIMEOUT,
        max_hibernation_seconds=MAX_HIBERNATION,
        interval_seconds=0.01,
    )


async def _state_of(
    session_factory: async_sessionmaker[AsyncSession], sandbox_id: str
) -> SandboxState:
    async with session_factory() as session:
        sandbox = await get_sandbox_by_id(session, sandbox_id)
        assert sandbox is not None
        return sandbox.state


async def _running_sandbox(
    manager: SandboxLifecycleManager, db_session: AsyncSession, owner_id: UUID
) -> str:
    project = await create_project(db_session, owner_id, "app")
    sandbox = await manager.create(project.id)
    return sandbox.id


@pytest.mark.asyncio
async def test_pauses_only_past_idle_timeout(
    reaper: SandboxIdleReaper,
    manager: SandboxLifecycleManager,
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    owner_id: UUID,
    set_last_active: SetLastActive,
) -> None:
    stale = await _running_sandbox(manager, db_session, owner_id)
    fresh = await _running_sandbox(manager, db_session, owner_id)
    now = utc_now()
    await set_last_active(stale, now - datetime.timedelta(seconds=IDLE_TIMEOUT + 1))
    await set_last_active(fresh, now - datetime.timedelta(seconds=IDLE_TIMEOUT - 1))

    result = await reaper.trigger_cleanup()

    assert result.paused_count == 1
    assert result.terminated_count == 0
    assert await _state_of(session_factory, stale) == SandboxState.PAUSED
    assert await _state_of(session_factory, fresh) == SandboxState.RUNNING


@pytest.mark.asyncio
async def test_terminates_only_past_max_hibernation(
    reaper: SandboxIdleReaper,
    manager: SandboxLifecycleManager,
    provider: FakeSandboxProvider,
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    owner_id: UUID,
    set_last_active: SetLastActive,
) -> None:
    stale = await _running_sandbox(manager, db_session, owner_id)
    fresh = await _running_sandbox(manager, db_session, owner_id)
    await manager.pause(stale)
    await manager.pause(fresh)
    now = utc_now()
    await set_last_active(
        stale, now - datetime.timedelta(seconds=MAX_HIBERNATION + 1)
    )
    await set_last_active(
        fresh, now - datetime.timedelta(seconds=MAX_HIBERNATION - 1)
    )

    result = await reaper.trigger_cleanup()

    assert result.terminated_count == 1
    assert await _state_of(session_factory, stale) == SandboxState.TERMINATED
    assert await _state_of(session_factory, fresh) == SandboxState.PAUSED
    assert provider.killed == [stale]


@pytest.mark.asyncio
async def test_skips_projects_with_turn_in_flight(
    reaper: SandboxIdleReaper,
    manager: SandboxLifecycleManager,
    registry: InFlightRegistry,
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    project: Project,
    set_last_active: SetLastActive,
) -> None:
    sandbox = await manager.create(project.id)
    sandbox_id = sandbox.id
    await set_last_active(
        sandbox_id, utc_now() - datetime.timedelta(seconds=IDLE_TIMEOUT * 2)
    )
    cancel_event = registry.register(project.id)
    assert cancel_event is not None

    result = await reaper.trigger_cleanup()

    assert result.paused_count == 0
    assert await _state_of(session_factory, sandbox_id) == SandboxState.RUNNING

    registry.deregister(project.id, cancel_event)
    result = await reaper.trigger_cleanup()
    assert result.paused_count == 1


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_sweep(
    reaper: SandboxIdleReaper,
    manager: SandboxLifecycleManager,
    provider: FakeSandboxProvider,
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    owner_id: UUID,
    set_last_active: SetLastActive,
) -> None:
    broken = await _running_sandbox(manager, db_session, owner_id)
    healthy = await _running_sandbox(manager, db_session, owner_id)
    now = utc_now()
    # Older first, so the broken one is attempted first
    await set_last_active(broken, now - datetime.timedelta(seconds=IDLE_TIMEOUT * 3))
    await set_last_active(healthy, now - datetime.timedelta(seconds=IDLE_TIMEOUT * 2))
    provider.pause_errors[broken] = RuntimeError("network blip")

    result = await reaper.trigger_cleanup()

    assert result.paused_count == 1
    assert await _state_of(session_factory, broken) == SandboxState.RUNNING
    assert await _state_of(session_factory, healthy) == SandboxState.PAUSED
    # A transient failure never kills the remote sandbox
    assert provider.remote_states[broken] == "running"
    assert broken not in provider.killed


@pytest.mark.asyncio
async def test_reclaimed_idle_sandbox_is_retired(
    reaper: SandboxIdleReaper,
    manager: SandboxLifecycleManager,
    provider: FakeSandboxProvider,
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    handle_cache: SandboxHandleCache,
    owner_id: UUID,
    set_last_active: SetLastActive,
) -> None:
    sandbox_id = await _running_sandbox(manager, db_session, owner_id)
    await set_last_active(
        sandbox_id, utc_now() - datetime.timedelta(seconds=IDLE_TIMEOUT * 2)
    )
    provider.reclaim(sandbox_id)

    result = await reaper.trigger_cleanup()

    assert result.paused_count == 0
    assert result.terminated_count == 1
    assert await _state_of(session_factory, sandbox_id) == SandboxState.TERMINATED
    assert sandbox_id not in handle_cache

    # Nothing left for the next cycle to retry
    result = await reaper.trigger_cleanup()
    assert result.paused_count == 0
    assert result.terminated_count == 0


@pytest.mark.asyncio
async def test_run_cleanup_skips_when_cycle_in_progress(
    reaper: SandboxIdleReaper,
) -> None:
    async with reaper._cycle_lock:
        assert await reaper.run_cleanup() is None


@pytest.mark.asyncio
async def test_start_and_stop(
    reaper: SandboxIdleReaper,
    manager: SandboxLifecycleManager,
    provider: FakeSandboxProvider,
    session_factory: async_sessionmaker[AsyncSession],
    project: Project,
    set_last_active: SetLastActive,
) -> None:
    sandbox = await manager.create(project.id)
    sandbox_id = sandbox.id
    await set_last_active(
        sandbox_id, utc_now() - datetime.timedelta(seconds=IDLE_TIMEOUT * 2)
    )

    reaper.start()
    reaper.start()
    assert reaper.is_started

    # Wait for a cycle that paused the sandbox to finish committing
    for _ in range(200):
        if provider.paused and not reaper._cycle_lock.locked():
            break
        await asyncio.sleep(0.01)

    await reaper.stop()
    assert not reaper.is_started
    assert await _state_of(session_factory, sandbox_id) == SandboxState.PAUSED
