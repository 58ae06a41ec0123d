"""API endpoints for agent turns."""

from uuid import UUID

from fastapi import APIRouter
from fastapi import Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from sandcraft.auth.users import current_user
from sandcraft.auth.users import User
from sandcraft.db.engine.sql_engine import get_async_session
from sandcraft.server.features.build.agent.orchestrator import AgentOrchestrator
from sandcraft.server.features.build.api.dependencies import get_agent_orchestrator
from sandcraft.server.features.build.api.models import ChatRequest
from sandcraft.server.features.build.api.models import HistoryResponse
from sandcraft.server.features.build.api.models import MessageResponse
from sandcraft.server.features.build.api.models import StopRequest
from sandcraft.server.features.build.api.models import StopResponse
from sandcraft.server.features.build.api.streaming import sse_response
from sandcraft.server.features.build.db.project import get_project_for_owner
from sandcraft.server.features.build.errors import BusyError

router = APIRouter()


@router.post("/agent/chat")
async def chat(
    request: ChatRequest,
    user: User = Depends(current_user),
    db_session: AsyncSession = Depends(get_async_session),
    orchestrator: AgentOrchestrator = Depends(get_agent_orchestrator),
) -> StreamingResponse:
    """Run one agent turn and stream its packets as server-sent events.

    The stream always ends with exactly one agent:done or agent:error event.
    """
    await get_project_for_owner(db_session, request.project_id, user.id)

    # Checked up front so the common case gets a proper status code. A race
    # past this point still ends in a busy agent:error on the stream.
    if orchestrator.is_running(request.project_id):
        raise BusyError()

    return sse_response(orchestrator.chat(request.project_id, request.content))


@router.post("/agent/stop", response_model=StopResponse)
async def stop(
    request: StopRequest,
    user: User = Depends(current_user),
    db_session: AsyncSession = Depends(get_async_session),
    orchestrator: AgentOrchestrator = Depends(get_agent_orchestrator),
) -> StopResponse:
    await get_project_for_owner(db_session, request.project_id, user.id)
    return StopResponse(stopped=orchestrator.stop(request.project_id))


@router.get("/agent/history/{project_id}", response_model=HistoryResponse)
async def get_history(
    project_id: UUID,
    user: User = Depends(current_user),
    db_session: AsyncSession = Depends(get_async_session),
    orchestrator: AgentOrchestrator = Depends(get_agent_orchestrator),
) -> HistoryResponse:
    """Get the project's conversation, oldest message first."""
    await get_project_for_owner(db_session, project_id, user.id)

    conversation, messages = await orchestrator.get_history(project_id)
    return HistoryResponse(
        conversation_id=str(conversation.id) if conversation else None,
        messages=[MessageResponse.from_model(message) for message in messages],
    )
