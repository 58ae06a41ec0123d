from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sandcraft.db.models import Project
from sandcraft.server.features.build.errors import ForbiddenError
from sandcraft.server.features.build.errors import NotFoundError


async def create_project(
    db_session: AsyncSession,
    owner_id: UUID,
    name: str,
    description: str | None = None,
) -> Project:
    project = Project(owner_id=owner_id, name=name, description=description)
    db_session.add(project)
    await db_session.commit()
    return project


async def get_project(db_session: AsyncSession, project_id: UUID) -> Project | None:
    stmt = select(Project).where(Project.id == project_id)
    result = await db_session.execute(stmt)
    return result.scalar_one_or_none()


async def get_projects_for_owner(
    db_session: AsyncSession, owner_id: UUID
) -> list[Project]:
    stmt = (
        select(Project)
        .where(Project.owner_id == owner_id)
        .order_by(Project.created_at.desc())
    )
    result = await db_session.execute(stmt)
    return list(result.scalars().all())


async def get_project_for_owner(
    db_session: AsyncSession, project_id: UUID, owner_id: UUID
) -> Project:
    """Fetch a project and verify the caller owns it.

    Raises:
        NotFoundError: the project does not exist
        ForbiddenError: the project belongs to someone else
    """
    project = await get_project(db_session, project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found")
    if project.owner_id != owner_id:
        raise ForbiddenError(f"Project {project_id} is not owned by the caller")
    return project


async def delete_project(db_session: AsyncSession, project_id: UUID) -> bool:
    """Delete a project; its sandbox record, conversation and messages go with it."""
    project = await get_project(db_session, project_id)
    if project is None:
        return False

    await db_session.delete(project)
    await db_session.commit()
    return True
