"""API endpoints for build projects."""

from uuid import UUID

from fastapi import APIRouter
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from sandcraft.auth.users import current_user
from sandcraft.auth.users import User
from sandcraft.db.engine.sql_engine import get_async_session
from sandcraft.db.enums import SandboxState
from sandcraft.server.features.build.agent.registry import get_in_flight_registry
from sandcraft.server.features.build.api.dependencies import get_lifecycle_manager
from sandcraft.server.features.build.api.models import ProjectCreateRequest
from sandcraft.server.features.build.api.models import ProjectDeleteResponse
from sandcraft.server.features.build.api.models import ProjectListResponse
from sandcraft.server.features.build.api.models import ProjectResponse
from sandcraft.server.features.build.db.project import create_project
from sandcraft.server.features.build.db.project import delete_project
from sandcraft.server.features.build.db.project import get_project_for_owner
from sandcraft.server.features.build.db.project import get_projects_for_owner
from sandcraft.server.features.build.sandbox.manager import SandboxLifecycleManager
from sandcraft.utils.logger import setup_logger

logger = setup_logger()

router = APIRouter()


@router.get("/projects", response_model=ProjectListResponse)
async def list_projects(
    user: User = Depends(current_user),
    db_session: AsyncSession = Depends(get_async_session),
) -> ProjectListResponse:
    """List the caller's projects, newest first."""
    projects = await get_projects_for_owner(db_session, user.id)
    return ProjectListResponse(
        projects=[ProjectResponse.from_model(project) for project in projects]
    )


@router.post("/projects", response_model=ProjectResponse)
async def create_project_endpoint(
    request: ProjectCreateRequest,
    user: User = Depends(current_user),
    db_session: AsyncSession = Depends(get_async_session),
) -> ProjectResponse:
    project = await create_project(
        db_session, user.id, request.name, description=request.description
    )
    logger.info(f"Created project {project.id} for user {user.id}")
    return ProjectResponse.from_model(project)


@router.get("/projects/{project_id}", response_model=ProjectResponse)
async def get_project_endpoint(
    project_id: UUID,
    user: User = Depends(current_user),
    db_session: AsyncSession = Depends(get_async_session),
) -> ProjectResponse:
    project = await get_project_for_owner(db_session, project_id, user.id)
    return ProjectResponse.from_model(project)


@router.delete("/projects/{project_id}", response_model=ProjectDeleteResponse)
async def delete_project_endpoint(
    project_id: UUID,
    user: User = Depends(current_user),
    db_session: AsyncSession = Depends(get_async_session),
    manager: SandboxLifecycleManager = Depends(get_lifecycle_manager),
) -> ProjectDeleteResponse:
    """Delete a project.

    Any in-flight agent turn is stopped and the remote sandbox is killed
    before the records go.
    """
    await get_project_for_owner(db_session, project_id, user.id)

    get_in_flight_registry().cancel(project_id)

    sandbox = await manager.get_sandbox(project_id)
    if sandbox is not None and sandbox.state != SandboxState.TERMINATED:
        await manager.terminate(sandbox.id)

    deleted = await delete_project(db_session, project_id)
    logger.info(f"Deleted project {project_id}")
    return ProjectDeleteResponse(deleted=deleted)
