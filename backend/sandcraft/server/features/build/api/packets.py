"""Build packet types for streaming agent turns and sandbox output.

All packets are sent as SSE frames whose event name is the packet `type` and
whose data is the JSON packet `{type, data, timestamp}`.

Agent events (re-emitted from the in-sandbox runtime, see agent/events.py):
- agent:thinking: Agent started working
- agent:message: Assistant text chunk
- agent:tool_call: Tool invocation started
- agent:tool_result: Tool invocation finished
- agent:done: Turn complete (terminal)
- agent:error: Turn failed, was stopped, or was rejected (terminal)

Packets produced on this side (defined here):
- sandbox:status: Sandbox lifecycle progress during a turn
- file:changed: A file-writing tool succeeded
- terminal:output: A chunk of command output
"""

from typing import Literal

from pydantic import Field

from sandcraft.server.features.build.agent.events import AgentDoneEvent
from sandcraft.server.features.build.agent.events import AgentErrorEvent
from sandcraft.server.features.build.agent.events import AgentMessageEvent
from sandcraft.server.features.build.agent.events import AgentThinkingEvent
from sandcraft.server.features.build.agent.events import AgentToolCallEvent
from sandcraft.server.features.build.agent.events import AgentToolResultEvent
from sandcraft.server.features.build.agent.events import utc_now_iso
from sandcraft.server.features.build.agent.events import WireModel


# =============================================================================
# Payloads
# =============================================================================


class SandboxStatusData(WireModel):
    status: Literal["starting", "running", "paused", "terminated"]
    sandbox_id: str | None = None


class FileChangedData(WireModel):
    path: str
    tool: str
    tool_use_id: str


class TerminalOutputData(WireModel):
    stream: Literal["stdout", "stderr"]
    content: str


# =============================================================================
# Packets
# =============================================================================


class SandboxStatusPacket(WireModel):
    type: Literal["sandbox:status"] = "sandbox:status"
    data: SandboxStatusData
    timestamp: str = Field(default_factory=utc_now_iso)


class FileChangedPacket(WireModel):
    type: Literal["file:changed"] = "file:changed"
    data: FileChangedData
    timestamp: str = Field(default_factory=utc_now_iso)


class TerminalOutputPacket(WireModel):
    type: Literal["terminal:output"] = "terminal:output"
    data: TerminalOutputData
    timestamp: str = Field(default_factory=utc_now_iso)


# =============================================================================
# Union Type for everything that can appear on a build stream
# =============================================================================

StreamPacket = (
    AgentThinkingEvent
    | AgentMessageEvent
    | AgentToolCallEvent
    | AgentToolResultEvent
    | AgentDoneEvent
    | AgentErrorEvent
    | SandboxStatusPacket
    | FileChangedPacket
    | TerminalOutputPacket
)

TERMINAL_PACKET_TYPES = frozenset({"agent:done", "agent:error"})
