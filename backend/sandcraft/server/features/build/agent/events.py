"""Typed event models for the in-sandbox agent runtime.

The worker prints one JSON object per line on stdout:

    {"type": "agent:tool_call", "data": {...}, "timestamp": "..."}

These same models are re-emitted to clients unchanged, so field names on the
wire are camelCase (toolUseId, isError, sessionId).
"""

from datetime import datetime
from datetime import timezone
from typing import Annotated
from typing import Any
from typing import Literal

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    """Return current UTC time in ISO format."""
    return datetime.now(tz=timezone.utc).isoformat()


class WireModel(BaseModel):
    """Accepts and emits camelCase keys, also accepts snake_case on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Payloads
# =============================================================================


class AgentMessageData(WireModel):
    content: str = ""


class AgentToolCallData(WireModel):
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class AgentToolResultData(WireModel):
    tool_use_id: str
    result: Any = None
    is_error: bool = False


class AgentDoneData(WireModel):
    session_id: str | None = None


class AgentErrorData(WireModel):
    message: str
    code: str | None = None


# =============================================================================
# Events
# =============================================================================


class AgentThinkingEvent(WireModel):
    """Agent started working on the prompt."""

    type: Literal["agent:thinking"] = "agent:thinking"
    data: dict[str, Any] | None = None
    timestamp: str = Field(default_factory=utc_now_iso)


class AgentMessageEvent(WireModel):
    """Assistant text chunk."""

    type: Literal["agent:message"] = "agent:message"
    data: AgentMessageData
    timestamp: str = Field(default_factory=utc_now_iso)


class AgentToolCallEvent(WireModel):
    """Tool invocation started."""

    type: Literal["agent:tool_call"] = "agent:tool_call"
    data: AgentToolCallData
    timestamp: str = Field(default_factory=utc_now_iso)


class AgentToolResultEvent(WireModel):
    """Tool invocation finished."""

    type: Literal["agent:tool_result"] = "agent:tool_result"
    data: AgentToolResultData
    timestamp: str = Field(default_factory=utc_now_iso)


class AgentDoneEvent(WireModel):
    """Turn complete. Carries the session id to resume from next time."""

    type: Literal["agent:done"] = "agent:done"
    data: AgentDoneData = Field(default_factory=AgentDoneData)
    timestamp: str = Field(default_factory=utc_now_iso)


class AgentErrorEvent(WireModel):
    """The turn failed or was stopped."""

    type: Literal["agent:error"] = "agent:error"
    data: AgentErrorData
    timestamp: str = Field(default_factory=utc_now_iso)


AgentRuntimeEvent = Annotated[
    AgentThinkingEvent
    | AgentMessageEvent
    | AgentToolCallEvent
    | AgentToolResultEvent
    | AgentDoneEvent
    | AgentErrorEvent,
    Field(discriminator="type"),
]


def make_error_event(message: str, code: str | None = None) -> AgentErrorEvent:
    return AgentErrorEvent(data=AgentErrorData(message=message, code=code))
