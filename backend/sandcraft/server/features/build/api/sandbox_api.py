"""API endpoints for sandbox lifecycle, files and commands."""

from collections.abc import AsyncIterator
from uuid import UUID

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Query
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from sandcraft.auth.users import current_user
from sandcraft.auth.users import User
from sandcraft.configs.contextvars import CURRENT_PROJECT_ID_CONTEXTVAR
from sandcraft.db.engine.sql_engine import get_async_session
from sandcraft.db.engine.sql_engine import get_async_session_context_manager
from sandcraft.db.models import Sandbox
from sandcraft.server.features.build.agent.events import AgentDoneEvent
from sandcraft.server.features.build.agent.events import make_error_event
from sandcraft.server.features.build.api.dependencies import get_lifecycle_manager
from sandcraft.server.features.build.api.dependencies import get_owned_sandbox
from sandcraft.server.features.build.api.dependencies import get_provider
from sandcraft.server.features.build.api.models import DirectoryCreateRequest
from sandcraft.server.features.build.api.models import DirectoryListingResponse
from sandcraft.server.features.build.api.models import ExecuteRequest
from sandcraft.server.features.build.api.models import ExecuteResponse
from sandcraft.server.features.build.api.models import FileContentResponse
from sandcraft.server.features.build.api.models import FileEntryResponse
from sandcraft.server.features.build.api.models import FileWriteRequest
from sandcraft.server.features.build.api.models import PathResponse
from sandcraft.server.features.build.api.models import PreviewResponse
from sandcraft.server.features.build.api.models import SandboxResponse
from sandcraft.server.features.build.api.packets import StreamPacket
from sandcraft.server.features.build.api.packets import TerminalOutputData
from sandcraft.server.features.build.api.packets import TerminalOutputPacket
from sandcraft.server.features.build.api.streaming import sse_response
from sandcraft.server.features.build.db.project import get_project_for_owner
from sandcraft.server.features.build.errors import NotFoundError
from sandcraft.server.features.build.sandbox.base import SandboxProvider
from sandcraft.server.features.build.sandbox.manager import SandboxLifecycleManager
from sandcraft.server.features.build.sandbox.models import CommandResult
from sandcraft.utils.logger import setup_logger

logger = setup_logger()

router = APIRouter()


# =============================================================================
# Lifecycle Endpoints
# =============================================================================


@router.post("/sandbox/project/{project_id}/start", response_model=SandboxResponse)
async def start_sandbox(
    project_id: UUID,
    user: User = Depends(current_user),
    db_session: AsyncSession = Depends(get_async_session),
    manager: SandboxLifecycleManager = Depends(get_lifecycle_manager),
) -> SandboxResponse:
    """Make sure the project has a running sandbox, creating or resuming one."""
    await get_project_for_owner(db_session, project_id, user.id)
    sandbox = await manager.ensure_running(project_id)
    return SandboxResponse.from_model(sandbox)


@router.get("/sandbox/project/{project_id}", response_model=SandboxResponse)
async def get_project_sandbox(
    project_id: UUID,
    user: User = Depends(current_user),
    db_session: AsyncSession = Depends(get_async_session),
    manager: SandboxLifecycleManager = Depends(get_lifecycle_manager),
) -> SandboxResponse:
    await get_project_for_owner(db_session, project_id, user.id)
    sandbox = await manager.get_sandbox(project_id)
    if sandbox is None:
        raise NotFoundError(f"Project {project_id} has no sandbox")
    return SandboxResponse.from_model(sandbox)


@router.post("/sandbox/{sandbox_id}/pause", response_model=SandboxResponse)
async def pause_sandbox(
    sandbox: Sandbox = Depends(get_owned_sandbox),
    manager: SandboxLifecycleManager = Depends(get_lifecycle_manager),
) -> SandboxResponse:
    return SandboxResponse.from_model(await manager.pause(sandbox.id))


@router.post("/sandbox/{sandbox_id}/resume", response_model=SandboxResponse)
async def resume_sandbox(
    sandbox: Sandbox = Depends(get_owned_sandbox),
    manager: SandboxLifecycleManager = Depends(get_lifecycle_manager),
) -> SandboxResponse:
    return SandboxResponse.from_model(await manager.resume(sandbox.id))


@router.post("/sandbox/{sandbox_id}/terminate", response_model=SandboxResponse)
async def terminate_sandbox(
    sandbox: Sandbox = Depends(get_owned_sandbox),
    manager: SandboxLifecycleManager = Depends(get_lifecycle_manager),
) -> SandboxResponse:
    """Terminate the sandbox. Terminating twice is not an error."""
    sandbox_id = sandbox.id
    terminated = await manager.terminate(sandbox_id)
    if terminated is None:
        raise NotFoundError(f"Sandbox {sandbox_id} not found")
    return SandboxResponse.from_model(terminated)


# =============================================================================
# Filesystem Endpoints
# =============================================================================


@router.get("/sandbox/{sandbox_id}/files", response_model=DirectoryListingResponse)
async def list_files(
    path: str = Query("/"),
    sandbox: Sandbox = Depends(get_owned_sandbox),
    manager: SandboxLifecycleManager = Depends(get_lifecycle_manager),
) -> DirectoryListingResponse:
    entries = await manager.list_files(sandbox.id, path)
    return DirectoryListingResponse(
        path=path, entries=[FileEntryResponse.from_entry(entry) for entry in entries]
    )


@router.get("/sandbox/{sandbox_id}/file", response_model=FileContentResponse)
async def read_file(
    path: str = Query(..., min_length=1),
    sandbox: Sandbox = Depends(get_owned_sandbox),
    manager: SandboxLifecycleManager = Depends(get_lifecycle_manager),
) -> FileContentResponse:
    content = await manager.read_file(sandbox.id, path)
    return FileContentResponse(path=path, content=content)


@router.post("/sandbox/{sandbox_id}/file", response_model=PathResponse)
async def write_file(
    request: FileWriteRequest,
    sandbox: Sandbox = Depends(get_owned_sandbox),
    manager: SandboxLifecycleManager = Depends(get_lifecycle_manager),
) -> PathResponse:
    await manager.write_file(sandbox.id, request.path, request.content)
    return PathResponse(path=request.path)


@router.delete("/sandbox/{sandbox_id}/file", response_model=PathResponse)
async def delete_file(
    path: str = Query(..., min_length=1),
    sandbox: Sandbox = Depends(get_owned_sandbox),
    manager: SandboxLifecycleManager = Depends(get_lifecycle_manager),
) -> PathResponse:
    await manager.delete_file(sandbox.id, path)
    return PathResponse(path=path)


@router.post("/sandbox/{sandbox_id}/directory", response_model=PathResponse)
async def make_directory(
    request: DirectoryCreateRequest,
    sandbox: Sandbox = Depends(get_owned_sandbox),
    manager: SandboxLifecycleManager = Depends(get_lifecycle_manager),
) -> PathResponse:
    await manager.make_dir(sandbox.id, request.path)
    return PathResponse(path=request.path)


# =============================================================================
# Command Endpoints
# =============================================================================


@router.post("/sandbox/{sandbox_id}/execute", response_model=ExecuteResponse)
async def execute_command(
    request: ExecuteRequest,
    sandbox: Sandbox = Depends(get_owned_sandbox),
    manager: SandboxLifecycleManager = Depends(get_lifecycle_manager),
) -> ExecuteResponse:
    """Run a command to completion. A nonzero exit code is not an error here."""
    result = await manager.execute_command(
        sandbox.id,
        request.command,
        cwd=request.cwd,
        envs=request.envs,
        timeout_seconds=request.timeout_seconds,
    )
    return ExecuteResponse.from_result(result)


async def _stream_command_output(
    sandbox_id: str,
    project_id: UUID,
    request: ExecuteRequest,
    provider: SandboxProvider,
) -> AsyncIterator[StreamPacket]:
    # The request's session is closed by the time the body streams
    CURRENT_PROJECT_ID_CONTEXTVAR.set(str(project_id))
    try:
        async with get_async_session_context_manager() as db_session:
            manager = SandboxLifecycleManager(db_session, provider=provider)
            async for item in manager.stream_command(
                sandbox_id,
                request.command,
                cwd=request.cwd,
                envs=request.envs,
                timeout_seconds=request.timeout_seconds,
            ):
                if isinstance(item, CommandResult):
                    if item.succeeded:
                        yield AgentDoneEvent()
                    else:
                        yield make_error_event(
                            f"Command exited with code {item.exit_code}",
                            "command_failed",
                        )
                    return

                stream_name, chunk = item
                yield TerminalOutputPacket(
                    data=TerminalOutputData(stream=stream_name, content=chunk)
                )
    finally:
        CURRENT_PROJECT_ID_CONTEXTVAR.set(None)


@router.post("/sandbox/{sandbox_id}/execute/stream")
async def execute_command_stream(
    request: ExecuteRequest,
    sandbox: Sandbox = Depends(get_owned_sandbox),
    provider: SandboxProvider = Depends(get_provider),
) -> StreamingResponse:
    """Run a command, streaming terminal:output events as output arrives.

    Ends with agent:done on exit code 0, agent:error otherwise.
    """
    return sse_response(
        _stream_command_output(sandbox.id, sandbox.project_id, request, provider)
    )


@router.get("/sandbox/{sandbox_id}/preview", response_model=PreviewResponse)
async def get_preview(
    port: int = Query(..., ge=1, le=65535),
    sandbox: Sandbox = Depends(get_owned_sandbox),
    manager: SandboxLifecycleManager = Depends(get_lifecycle_manager),
) -> PreviewResponse:
    url = await manager.get_preview_url(sandbox.id, port)
    return PreviewResponse(port=port, url=url)
