"""Unit tests for parsing the agent worker's line-delimited event stream."""

import json
from typing import Any

import pytest

from sandcraft.server.features.build.agent.events import AgentDoneEvent
from sandcraft.server.features.build.agent.events import AgentErrorEvent
from sandcraft.server.features.build.agent.events import AgentMessageEvent
from sandcraft.server.features.build.agent.events import AgentThinkingEvent
from sandcraft.server.features.build.agent.events import AgentToolCallEvent
from sandcraft.server.features.build.agent.events import AgentToolResultEvent
from sandcraft.server.features.build.agent.parser import AgentEventParser
from sandcraft.server.features.build.agent.parser import parse_agent_event_line
from sandcraft.server.features.build.errors import ParseSkippedError

TIMESTAMP = "2026-01-01T00:00:00+00:00"


def _line(event_type: str, data: dict[str, Any] | None = None) -> str:
    return json.dumps({"type": event_type, "data": data, "timestamp": TIMESTAMP})


def test_parses_each_event_type() -> None:
    thinking = parse_agent_event_line(_line("agent:thinking"))
    assert isinstance(thinking, AgentThinkingEvent)

    message = parse_agent_event_line(_line("agent:message", {"content": "hello"}))
    assert isinstance(message, AgentMessageEvent)
    assert message.data.content == "hello"
    assert message.timestamp == TIMESTAMP

    tool_call = parse_agent_event_line(
        _line(
            "agent:tool_call",
            {"id": "t1", "name": "Write", "input": {"file_path": "a.txt"}},
        )
    )
    assert isinstance(tool_call, AgentToolCallEvent)
    assert tool_call.data.input == {"file_path": "a.txt"}

    tool_result = parse_agent_event_line(
        _line(
            "agent:tool_result",
            {"toolUseId": "t1", "result": "ok", "isError": True},
        )
    )
    assert isinstance(tool_result, AgentToolResultEvent)
    assert tool_result.data.tool_use_id == "t1"
    assert tool_result.data.is_error is True

    done = parse_agent_event_line(_line("agent:done", {"sessionId": "s-1"}))
    assert isinstance(done, AgentDoneEvent)
    assert done.data.session_id == "s-1"

    error = parse_agent_event_line(_line("agent:error", {"message": "boom"}))
    assert isinstance(error, AgentErrorEvent)
    assert error.data.message == "boom"


def test_tolerates_surrounding_whitespace() -> None:
    event = parse_agent_event_line(
        "  " + _line("agent:message", {"content": "x"}) + "\r\n"
    )
    assert isinstance(event, AgentMessageEvent)


@pytest.mark.parametrize(
    "line",
    [
        "",
        "   ",
        "npm WARN deprecated something",
        "{not json",
        json.dumps({"type": "agent:unknown", "data": {}}),
        json.dumps({"type": "agent:message", "data": {"content": 5}}),
        json.dumps({"type": "agent:tool_call", "data": {"name": "Write"}}),
        json.dumps(["agent:message"]),
    ],
)
def test_non_events_are_skipped(line: str) -> None:
    with pytest.raises(ParseSkippedError):
        parse_agent_event_line(line)


def test_parser_drops_bad_lines_and_keeps_order() -> None:
    parser = AgentEventParser()
    stdout = "\n".join(
        [
            _line("agent:thinking"),
            "Collecting claude-agent-sdk",
            _line("agent:message", {"content": "a"}),
            "",
            "{broken",
            _line("agent:message", {"content": "b"}),
        ]
    )

    events = parser.parse_output(stdout)

    assert [event.type for event in events] == [
        "agent:thinking",
        "agent:message",
        "agent:message",
    ]
    assert [
        event.data.content for event in events if isinstance(event, AgentMessageEvent)
    ] == ["a", "b"]
    # Blank lines are not counted as skipped
    assert parser.skipped_lines == 2


def test_wire_format_is_camel_case() -> None:
    event = parse_agent_event_line(
        _line("agent:tool_result", {"toolUseId": "t1", "result": None})
    )
    dumped = json.loads(event.model_dump_json(by_alias=True))

    assert dumped["data"] == {"toolUseId": "t1", "result": None, "isError": False}
    assert dumped["type"] == "agent:tool_result"
