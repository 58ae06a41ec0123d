from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import Field

from sandcraft.db.enums import MessageRole
from sandcraft.db.enums import SandboxState
from sandcraft.db.models import Message
from sandcraft.db.models import Project
from sandcraft.db.models import Sandbox
from sandcraft.server.features.build.agent.events import WireModel
from sandcraft.server.features.build.configs import DEFAULT_COMMAND_TIMEOUT_SECONDS
from sandcraft.server.features.build.sandbox.models import CommandResult
from sandcraft.server.features.build.sandbox.models import FilesystemEntry


# ===== Project Models =====
class ProjectCreateRequest(WireModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None


class ProjectResponse(WireModel):
    id: str
    name: str
    description: str | None
    owner_id: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, project: Project) -> "ProjectResponse":
        return cls(
            id=str(project.id),
            name=project.name,
            description=project.description,
            owner_id=str(project.owner_id),
            created_at=project.created_at,
            updated_at=project.updated_at,
        )


class ProjectListResponse(WireModel):
    projects: list[ProjectResponse]


class ProjectDeleteResponse(WireModel):
    deleted: bool


# ===== Sandbox Models =====
class SandboxResponse(WireModel):
    """Sandbox record as seen by clients."""

    id: str
    project_id: str
    state: SandboxState
    preview_url: str | None
    agent_session_id: str | None
    last_active_at: datetime
    created_at: datetime

    @classmethod
    def from_model(cls, sandbox: Sandbox) -> "SandboxResponse":
        return cls(
            id=sandbox.id,
            project_id=str(sandbox.project_id),
            state=sandbox.state,
            preview_url=sandbox.preview_url,
            agent_session_id=sandbox.agent_session_id,
            last_active_at=sandbox.last_active_at,
            created_at=sandbox.created_at,
        )


# ===== Agent Models =====
class ChatRequest(WireModel):
    project_id: UUID
    content: str = Field(min_length=1)


class StopRequest(WireModel):
    project_id: UUID


class StopResponse(WireModel):
    stopped: bool


class MessageResponse(WireModel):
    id: str
    role: MessageRole
    content: str
    tool_calls: list[dict[str, Any]] | None
    created_at: datetime

    @classmethod
    def from_model(cls, message: Message) -> "MessageResponse":
        return cls(
            id=str(message.id),
            role=message.role,
            content=message.content,
            tool_calls=message.tool_calls,
            created_at=message.created_at,
        )


class HistoryResponse(WireModel):
    conversation_id: str | None
    messages: list[MessageResponse]


# ===== Filesystem Models =====
class FileEntryResponse(WireModel):
    name: str
    path: str
    is_directory: bool
    size_bytes: int | None = None
    modified_at: datetime | None = None

    @classmethod
    def from_entry(cls, entry: FilesystemEntry) -> "FileEntryResponse":
        return cls(
            name=entry.name,
            path=entry.path,
            is_directory=entry.is_directory,
            size_bytes=entry.size_bytes,
            modified_at=entry.modified_at,
        )


class DirectoryListingResponse(WireModel):
    path: str
    entries: list[FileEntryResponse]


class FileContentResponse(WireModel):
    path: str
    content: str


class FileWriteRequest(WireModel):
    path: str = Field(min_length=1)
    content: str


class DirectoryCreateRequest(WireModel):
    path: str = Field(min_length=1)


class PathResponse(WireModel):
    path: str


# ===== Command Models =====
class ExecuteRequest(WireModel):
    command: str = Field(min_length=1)
    cwd: str | None = None
    envs: dict[str, str] | None = None
    timeout_seconds: float = Field(default=DEFAULT_COMMAND_TIMEOUT_SECONDS, gt=0)


class ExecuteResponse(WireModel):
    stdout: str
    stderr: str
    exit_code: int

    @classmethod
    def from_result(cls, result: CommandResult) -> "ExecuteResponse":
        return cls(
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
        )


class PreviewResponse(WireModel):
    port: int
    url: str
