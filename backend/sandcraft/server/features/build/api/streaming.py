"""SSE framing for build streams."""

from collections.abc import AsyncIterator
from typing import assert_never

from fastapi.responses import StreamingResponse

from sandcraft.server.features.build.agent.events import AgentDoneEvent
from sandcraft.server.features.build.agent.events import AgentErrorEvent
from sandcraft.server.features.build.agent.events import AgentMessageEvent
from sandcraft.server.features.build.agent.events import AgentThinkingEvent
from sandcraft.server.features.build.agent.events import AgentToolCallEvent
from sandcraft.server.features.build.agent.events import AgentToolResultEvent
from sandcraft.server.features.build.agent.events import make_error_event
from sandcraft.server.features.build.api.packets import FileChangedPacket
from sandcraft.server.features.build.api.packets import SandboxStatusPacket
from sandcraft.server.features.build.api.packets import StreamPacket
from sandcraft.server.features.build.api.packets import TERMINAL_PACKET_TYPES
from sandcraft.server.features.build.api.packets import TerminalOutputPacket
from sandcraft.server.features.build.errors import BuildError
from sandcraft.utils.logger import setup_logger

logger = setup_logger()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse_packet(packet: StreamPacket) -> str:
    """Format a packet as an SSE frame named after its type."""
    match packet:
        case (
            AgentThinkingEvent()
            | AgentMessageEvent()
            | AgentToolCallEvent()
            | AgentToolResultEvent()
            | AgentDoneEvent()
            | AgentErrorEvent()
            | SandboxStatusPacket()
            | FileChangedPacket()
            | TerminalOutputPacket()
        ):
            event_type = packet.type
        case _:
            assert_never(packet)

    payload = packet.model_dump_json(by_alias=True)
    return f"event: {event_type}\ndata: {payload}\n\n"


async def stream_packets(packets: AsyncIterator[StreamPacket]) -> AsyncIterator[str]:
    """Frame packets as SSE, ending with exactly one terminal frame.

    Anything after the first terminal packet is dropped. If the upstream fails
    or ends without a terminal packet, an agent:error frame is sent instead.
    """
    try:
        async for packet in packets:
            yield format_sse_packet(packet)
            if packet.type in TERMINAL_PACKET_TYPES:
                return
    except BuildError as e:
        logger.warning(f"Build stream failed: {e}")
        yield format_sse_packet(make_error_event(e.message, e.code))
        return
    except Exception as e:
        logger.exception("Unexpected error in build stream")
        yield format_sse_packet(make_error_event(str(e) or "Unknown error", "internal"))
        return

    logger.warning("Build stream ended without a terminal packet")
    yield format_sse_packet(make_error_event("Stream ended unexpectedly", "internal"))


def sse_response(packets: AsyncIterator[StreamPacket]) -> StreamingResponse:
    return StreamingResponse(
        stream_packets(packets),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
