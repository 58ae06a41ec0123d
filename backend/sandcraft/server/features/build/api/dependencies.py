from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from sandcraft.auth.users import current_user
from sandcraft.auth.users import User
from sandcraft.db.engine.sql_engine import get_async_session
from sandcraft.db.models import Sandbox
from sandcraft.server.features.build.agent.orchestrator import AgentOrchestrator
from sandcraft.server.features.build.db.project import get_project_for_owner
from sandcraft.server.features.build.db.sandbox import get_sandbox_by_id
from sandcraft.server.features.build.errors import NotFoundError
from sandcraft.server.features.build.sandbox.base import get_sandbox_provider
from sandcraft.server.features.build.sandbox.base import SandboxProvider
from sandcraft.server.features.build.sandbox.manager import SandboxLifecycleManager


def get_provider() -> SandboxProvider:
    return get_sandbox_provider()


def get_lifecycle_manager(
    db_session: AsyncSession = Depends(get_async_session),
    provider: SandboxProvider = Depends(get_provider),
) -> SandboxLifecycleManager:
    return SandboxLifecycleManager(db_session, provider=provider)


def get_agent_orchestrator(
    provider: SandboxProvider = Depends(get_provider),
) -> AgentOrchestrator:
    return AgentOrchestrator(provider=provider)


async def get_owned_sandbox(
    sandbox_id: str,
    user: User = Depends(current_user),
    db_session: AsyncSession = Depends(get_async_session),
) -> Sandbox:
    """Path dependency for /sandbox/{sandbox_id} routes.

    Raises:
        NotFoundError: no record with that id
        ForbiddenError: the sandbox's project belongs to someone else
    """
    sandbox = await get_sandbox_by_id(db_session, sandbox_id)
    if sandbox is None:
        raise NotFoundError(f"Sandbox {sandbox_id} not found")

    await get_project_for_owner(db_session, sandbox.project_id, user.id)
    return sandbox
