"""Agent worker uploaded into each sandbox and run once per turn.

Usage: python3 agent_worker.py "<user message>"

Environment:
    ANTHROPIC_API_KEY  required
    PROJECT_DIR        working directory for the agent
    SESSION_ID         resume token from the previous turn, if any
    ALLOWED_TOOLS      comma-separated tool names

Prints one JSON event per line on stdout and exits non-zero on failure.
This file only depends on the standard library and claude-agent-sdk, which
the bootstrap step installs inside the sandbox.
"""

import asyncio
import json
import os
import sys
from datetime import datetime
from datetime import timezone
from typing import Any

from claude_agent_sdk import AssistantMessage
from claude_agent_sdk import ClaudeAgentOptions
from claude_agent_sdk import query
from claude_agent_sdk import ResultMessage
from claude_agent_sdk import SystemMessage
from claude_agent_sdk import UserMessage
from claude_agent_sdk.types import TextBlock
from claude_agent_sdk.types import ToolResultBlock
from claude_agent_sdk.types import ToolUseBlock

DEFAULT_ALLOWED_TOOLS = "Read,Write,Edit,Bash,Glob,Grep,WebFetch"

SYSTEM_PROMPT = """You are an AI assistant helping to build web applications.
Your working directory is {project_dir}. Use modern web practices (React, TypeScript, Tailwind CSS).
Available tools: {tools}.
Always explain what you're doing and verify changes after making them."""


def now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def emit(event_type: str, data: dict[str, Any] | None = None) -> None:
    print(
        json.dumps(
            {"type": event_type, "data": data, "timestamp": now()}, default=str
        ),
        flush=True,
    )


def _tool_result_content(block: ToolResultBlock) -> Any:
    if isinstance(block.content, list):
        texts = [
            item.get("text", "")
            for item in block.content
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        return "\n".join(texts) if texts else block.content
    return block.content


async def run(prompt: str) -> int:
    project_dir = os.environ.get("PROJECT_DIR") or "/home/user/project"
    session_id = os.environ.get("SESSION_ID") or None
    allowed_tools = [
        tool.strip()
        for tool in (os.environ.get("ALLOWED_TOOLS") or DEFAULT_ALLOWED_TOOLS).split(",")
        if tool.strip()
    ]

    emit("agent:thinking")

    options = ClaudeAgentOptions(
        resume=session_id,
        allowed_tools=allowed_tools,
        permission_mode="acceptEdits",
        cwd=project_dir,
        system_prompt=SYSTEM_PROMPT.format(
            project_dir=project_dir, tools=", ".join(allowed_tools)
        ),
    )

    result_session_id = session_id
    async for message in query(prompt=prompt, options=options):
        if isinstance(message, SystemMessage):
            if message.subtype == "init" and message.data.get("session_id"):
                result_session_id = message.data["session_id"]

        elif isinstance(message, AssistantMessage):
            for block in message.content:
                if isinstance(block, TextBlock):
                    emit("agent:message", {"content": block.text})
                elif isinstance(block, ToolUseBlock):
                    emit(
                        "agent:tool_call",
                        {"id": block.id, "name": block.name, "input": block.input},
                    )

        elif isinstance(message, UserMessage):
            # Tool results come back to the model as user content blocks
            if isinstance(message.content, list):
                for block in message.content:
                    if isinstance(block, ToolResultBlock):
                        emit(
                            "agent:tool_result",
                            {
                                "toolUseId": block.tool_use_id,
                                "result": _tool_result_content(block),
                                "isError": bool(block.is_error),
                            },
                        )

        elif isinstance(message, ResultMessage):
            result_session_id = message.session_id or result_session_id
            if message.is_error:
                emit("agent:error", {"message": message.result or "Agent run failed"})
                return 1

    emit("agent:done", {"sessionId": result_session_id})
    return 0


def main() -> None:
    if len(sys.argv) < 2 or not sys.argv[1]:
        emit("agent:error", {"message": "No message provided"})
        sys.exit(1)

    if not os.environ.get("ANTHROPIC_API_KEY"):
        emit("agent:error", {"message": "ANTHROPIC_API_KEY not set"})
        sys.exit(1)

    try:
        exit_code = asyncio.run(run(sys.argv[1]))
    except Exception as e:
        emit("agent:error", {"message": str(e) or "Unexpected error"})
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
