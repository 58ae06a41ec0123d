"""Database operations for project sandbox records."""

import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sandcraft.db.enums import SandboxState
from sandcraft.db.models import Sandbox
from sandcraft.server.features.build.errors import ConflictError
from sandcraft.utils.logger import setup_logger

logger = setup_logger()


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


async def upsert_sandbox__no_commit(
    db_session: AsyncSession,
    project_id: UUID,
    sandbox_id: str,
    state: SandboxState,
    preview_url: str | None = None,
) -> Sandbox:
    """Insert the project's sandbox record, or re-key the existing one.

    A project has a single sandbox row for its whole life. Starting a fresh
    creation cycle points that row at the new provider id and clears the
    fields that belonged to the previous remote instance.

    NOTE: This function uses flush() instead of commit(). The caller is
    responsible for committing the transaction when ready.

    Raises:
        ConflictError: another writer inserted a record for the project first
    """
    sandbox = await get_sandbox_by_project_id(db_session, project_id)
    now = _now()

    if sandbox is None:
        sandbox = Sandbox(
            id=sandbox_id,
            project_id=project_id,
            state=state,
            preview_url=preview_url,
            last_active_at=now,
            created_at=now,
        )
        db_session.add(sandbox)
    else:
        sandbox.id = sandbox_id
        sandbox.state = state
        sandbox.preview_url = preview_url
        sandbox.agent_session_id = None
        sandbox.last_active_at = now
        sandbox.created_at = now

    try:
        await db_session.flush()
    except IntegrityError as e:
        raise ConflictError(
            f"Sandbox record for project {project_id} was written concurrently"
        ) from e

    return sandbox


async def get_sandbox_by_id(
    db_session: AsyncSession, sandbox_id: str
) -> Sandbox | None:
    stmt = select(Sandbox).where(Sandbox.id == sandbox_id)
    result = await db_session.execute(stmt)
    return result.scalar_one_or_none()


async def get_sandbox_by_project_id(
    db_session: AsyncSession, project_id: UUID
) -> Sandbox | None:
    """Get the sandbox record for a project (at most one exists)."""
    stmt = select(Sandbox).where(Sandbox.project_id == project_id)
    result = await db_session.execute(stmt)
    return result.scalar_one_or_none()


async def get_sandboxes_in_state_inactive_since(
    db_session: AsyncSession,
    state: SandboxState,
    cutoff: datetime.datetime,
) -> list[Sandbox]:
    """Get sandboxes in `state` whose last activity is strictly before cutoff."""
    stmt = (
        select(Sandbox)
        .where(
            Sandbox.state == state,
            Sandbox.last_active_at < cutoff,
        )
        .order_by(Sandbox.last_active_at)
    )
    result = await db_session.execute(stmt)
    return list(result.scalars().all())


async def update_sandbox_state__no_commit(
    db_session: AsyncSession,
    sandbox_id: str,
    state: SandboxState,
    touch: bool = False,
) -> Sandbox:
    """Update sandbox state.

    NOTE: This function uses flush() instead of commit(). The caller is
    responsible for committing the transaction when ready.
    """
    sandbox = await get_sandbox_by_id(db_session, sandbox_id)
    if not sandbox:
        raise ValueError(f"Sandbox {sandbox_id} not found")

    sandbox.state = state
    if touch:
        sandbox.last_active_at = _now()
    await db_session.flush()
    return sandbox


async def touch_sandbox__no_commit(
    db_session: AsyncSession, sandbox_id: str
) -> Sandbox | None:
    sandbox = await get_sandbox_by_id(db_session, sandbox_id)
    if sandbox is None:
        return None

    sandbox.last_active_at = _now()
    await db_session.flush()
    return sandbox


async def touch_sandbox(db_session: AsyncSession, sandbox_id: str) -> Sandbox | None:
    """Update sandbox last_active_at to now."""
    sandbox = await touch_sandbox__no_commit(db_session, sandbox_id)
    await db_session.commit()
    return sandbox


async def update_agent_session_id(
    db_session: AsyncSession, sandbox_id: str, agent_session_id: str
) -> Sandbox:
    sandbox = await get_sandbox_by_id(db_session, sandbox_id)
    if not sandbox:
        raise ValueError(f"Sandbox {sandbox_id} not found")

    sandbox.agent_session_id = agent_session_id
    await db_session.commit()
    return sandbox


async def update_preview_url(
    db_session: AsyncSession, sandbox_id: str, preview_url: str
) -> Sandbox:
    sandbox = await get_sandbox_by_id(db_session, sandbox_id)
    if not sandbox:
        raise ValueError(f"Sandbox {sandbox_id} not found")

    sandbox.preview_url = preview_url
    await db_session.commit()
    return sandbox
