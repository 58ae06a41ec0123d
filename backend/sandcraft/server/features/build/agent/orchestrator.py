"""Runs one agent turn per call, end to end.

A turn ensures the project's sandbox is running, bootstraps the agent
runtime inside it, stores the user message, runs the worker as one bounded
command and relays its events as they are printed. At the end the assistant
message and the agent's session id are stored.

At most one turn per project is in flight at a time. Every turn ends with
exactly one terminal packet (agent:done or agent:error), emitted here after
persistence. The worker's own done/error lines are captured, not forwarded.
"""

import asyncio
import shlex
from collections.abc import AsyncGenerator
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any
from typing import TypeVar
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import async_sessionmaker

from sandcraft.configs.contextvars import CURRENT_PROJECT_ID_CONTEXTVAR
from sandcraft.db.engine.sql_engine import SqlEngine
from sandcraft.db.enums import MessageRole
from sandcraft.db.models import Conversation
from sandcraft.db.models import Message
from sandcraft.server.features.build.agent.bootstrap import ensure_agent_runtime
from sandcraft.server.features.build.agent.bootstrap import worker_remote_path
from sandcraft.server.features.build.agent.events import AgentDoneData
from sandcraft.server.features.build.agent.events import AgentDoneEvent
from sandcraft.server.features.build.agent.events import AgentErrorEvent
from sandcraft.server.features.build.agent.events import AgentMessageEvent
from sandcraft.server.features.build.agent.events import AgentRuntimeEvent
from sandcraft.server.features.build.agent.events import AgentThinkingEvent
from sandcraft.server.features.build.agent.events import AgentToolCallData
from sandcraft.server.features.build.agent.events import AgentToolCallEvent
from sandcraft.server.features.build.agent.events import AgentToolResultData
from sandcraft.server.features.build.agent.events import AgentToolResultEvent
from sandcraft.server.features.build.agent.events import make_error_event
from sandcraft.server.features.build.agent.parser import AgentEventParser
from sandcraft.server.features.build.agent.registry import get_in_flight_registry
from sandcraft.server.features.build.agent.registry import InFlightRegistry
from sandcraft.server.features.build.api.packets import FileChangedData
from sandcraft.server.features.build.api.packets import FileChangedPacket
from sandcraft.server.features.build.api.packets import SandboxStatusData
from sandcraft.server.features.build.api.packets import SandboxStatusPacket
from sandcraft.server.features.build.api.packets import StreamPacket
from sandcraft.server.features.build.configs import AGENT_ALLOWED_TOOLS
from sandcraft.server.features.build.configs import AGENT_MESSAGE_TIMEOUT_SECONDS
from sandcraft.server.features.build.configs import AGENT_PROJECT_DIR
from sandcraft.server.features.build.configs import ANTHROPIC_API_KEY
from sandcraft.server.features.build.configs import FILE_WRITING_TOOLS
from sandcraft.server.features.build.db.conversation import create_message
from sandcraft.server.features.build.db.conversation import (
    get_conversation_by_project_id,
)
from sandcraft.server.features.build.db.conversation import get_conversation_messages
from sandcraft.server.features.build.db.conversation import get_or_create_conversation
from sandcraft.server.features.build.errors import BuildError
from sandcraft.server.features.build.errors import BusyError
from sandcraft.server.features.build.errors import CommandTimeoutError
from sandcraft.server.features.build.sandbox.base import SandboxProvider
from sandcraft.server.features.build.sandbox.manager import SandboxHandleCache
from sandcraft.server.features.build.sandbox.manager import SandboxLifecycleManager
from sandcraft.server.features.build.sandbox.models import CommandResult
from sandcraft.utils.logger import setup_logger

logger = setup_logger()

T = TypeVar("T")

STOPPED_MESSAGE = "Agent execution was stopped"


class AgentTurnState:
    """Accumulates what a turn produced so it can be stored at the end.

    Usage:
        state = AgentTurnState()

        # During streaming:
        state.add_message_chunk(event.data.content)
        state.add_tool_call(event.data)
        state.add_tool_result(event.data)

        # At the end:
        if state.has_content:
            save(state.content, state.tool_calls)
    """

    def __init__(self) -> None:
        self.message_chunks: list[str] = []
        # Ordered records of {id, name, input, result, isError}
        self.tool_calls: list[dict[str, Any]] = []
        self._tool_calls_by_id: dict[str, dict[str, Any]] = {}

        # Captured from the worker's terminal lines
        self.session_id: str | None = None
        self.agent_error: str | None = None
        # Set once the assistant message is stored
        self.persisted = False

    def add_message_chunk(self, text: str) -> None:
        self.message_chunks.append(text)

    def add_tool_call(self, data: AgentToolCallData) -> None:
        record: dict[str, Any] = {
            "id": data.id,
            "name": data.name,
            "input": data.input,
        }
        self.tool_calls.append(record)
        self._tool_calls_by_id[data.id] = record

    def add_tool_result(self, data: AgentToolResultData) -> dict[str, Any] | None:
        """Merge a result into its call record. Returns the record, if known."""
        record = self._tool_calls_by_id.get(data.tool_use_id)
        if record is None:
            logger.debug(f"Tool result for unknown tool call {data.tool_use_id}")
            return None

        record["result"] = data.result
        record["isError"] = data.is_error
        return record

    @property
    def content(self) -> str:
        return "".join(self.message_chunks)

    @property
    def has_content(self) -> bool:
        return bool(self.message_chunks) or bool(self.tool_calls)


async def _next_or_none(stream: AsyncIterator[T]) -> T | None:
    try:
        return await anext(stream)
    except StopAsyncIteration:
        return None


class AgentOrchestrator:
    """Drives agent turns for projects.

    Each turn opens its own database session, since a streamed turn outlives
    the request that started it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        provider: SandboxProvider | None = None,
        handle_cache: SandboxHandleCache | None = None,
        registry: InFlightRegistry | None = None,
        message_timeout_seconds: float = AGENT_MESSAGE_TIMEOUT_SECONDS,
    ) -> None:
        self._session_factory = session_factory or SqlEngine.get_session_factory()
        self._provider = provider
        self._handle_cache = handle_cache
        self._registry = registry if registry is not None else get_in_flight_registry()
        self._message_timeout_seconds = message_timeout_seconds

    def is_running(self, project_id: UUID) -> bool:
        return self._registry.is_running(project_id)

    def stop(self, project_id: UUID) -> bool:
        """Signal the in-flight turn to stop. Returns whether one was running.

        The worker process inside the sandbox is not killed, only the relay
        and bookkeeping of its output stop.
        """
        stopped = self._registry.cancel(project_id)
        if stopped:
            logger.info(f"Stop requested for agent turn on project {project_id}")
        return stopped

    async def get_history(
        self, project_id: UUID
    ) -> tuple[Conversation | None, list[Message]]:
        async with self._session_factory() as db_session:
            conversation = await get_conversation_by_project_id(db_session, project_id)
            if conversation is None:
                return None, []
            messages = await get_conversation_messages(db_session, conversation.id)
            return conversation, messages

    async def chat(
        self, project_id: UUID, message: str
    ) -> AsyncGenerator[StreamPacket, None]:
        """Run one agent turn, yielding packets as they happen.

        If a turn is already in flight for the project, yields a single
        busy error and returns without touching anything.
        """
        cancel_event = self._registry.register(project_id)
        if cancel_event is None:
            logger.info(f"Rejected agent turn for project {project_id}, already busy")
            busy = BusyError()
            yield make_error_event(busy.message, busy.code)
            return

        CURRENT_PROJECT_ID_CONTEXTVAR.set(str(project_id))
        try:
            async for packet in self._run_turn(project_id, message, cancel_event):
                yield packet
        finally:
            self._registry.deregister(project_id, cancel_event)
            CURRENT_PROJECT_ID_CONTEXTVAR.set(None)

    async def _run_turn(
        self, project_id: UUID, message: str, cancel_event: asyncio.Event
    ) -> AsyncGenerator[StreamPacket, None]:
        state = AgentTurnState()
        sandbox_id: str | None = None
        conversation_id: UUID | None = None

        async with self._session_factory() as db_session:
            manager = SandboxLifecycleManager(
                db_session, provider=self._provider, handle_cache=self._handle_cache
            )
            try:
                yield SandboxStatusPacket(data=SandboxStatusData(status="starting"))

                sandbox = await manager.ensure_running(project_id)
                sandbox_id = sandbox.id
                resume_token = sandbox.agent_session_id
                yield SandboxStatusPacket(
                    data=SandboxStatusData(status="running", sandbox_id=sandbox_id)
                )

                if cancel_event.is_set():
                    yield self._stopped(project_id)
                    return

                await ensure_agent_runtime(manager, sandbox_id)

                if cancel_event.is_set():
                    yield self._stopped(project_id)
                    return

                # Stored before the agent runs so a failed turn never loses it
                conversation = await get_or_create_conversation(db_session, project_id)
                conversation_id = conversation.id
                await create_message(
                    db_session, conversation_id, MessageRole.USER, message
                )

                cancelled = False
                result: CommandResult | None = None
                worker_events = self._run_worker(
                    manager, sandbox_id, message, resume_token, cancel_event
                )
                async with aclosing(worker_events):
                    async for item in worker_events:
                        if isinstance(item, CommandResult):
                            result = item
                            break
                        if cancel_event.is_set():
                            cancelled = True
                            break
                        for packet in self._consume_event(item, state):
                            yield packet
                if result is None:
                    # The worker stream only ends without a result on stop
                    cancelled = True

                await self._finish_turn(
                    manager, db_session, sandbox_id, conversation_id, state
                )

                if cancelled or result is None:
                    yield self._stopped(project_id)
                elif state.agent_error is not None:
                    yield make_error_event(state.agent_error, "agent_error")
                elif not result.succeeded:
                    yield make_error_event(
                        result.stderr.strip()
                        or f"Agent exited with code {result.exit_code}",
                        "agent_error",
                    )
                else:
                    yield AgentDoneEvent(
                        data=AgentDoneData(session_id=state.session_id)
                    )

            except BuildError as e:
                logger.warning(f"Agent turn for project {project_id} failed: {e}")
                await self._save_partial(
                    manager, db_session, sandbox_id, conversation_id, state
                )
                yield make_error_event(e.message, e.code)

            except Exception as e:
                logger.exception(f"Unexpected error in agent turn for {project_id}")
                await self._save_partial(
                    manager, db_session, sandbox_id, conversation_id, state
                )
                yield make_error_event(str(e) or "Unknown error", "internal")

    async def _run_worker(
        self,
        manager: SandboxLifecycleManager,
        sandbox_id: str,
        message: str,
        resume_token: str | None,
        cancel_event: asyncio.Event,
    ) -> AsyncGenerator[AgentRuntimeEvent | CommandResult, None]:
        """Run the worker, yielding parsed events and finally the CommandResult.

        Returns without a result if stop is requested while waiting on output.

        Raises:
            CommandTimeoutError: the worker did not finish in time
        """
        envs = {
            "ANTHROPIC_API_KEY": ANTHROPIC_API_KEY,
            "PROJECT_DIR": AGENT_PROJECT_DIR,
            "ALLOWED_TOOLS": ",".join(AGENT_ALLOWED_TOOLS),
        }
        if resume_token:
            envs["SESSION_ID"] = resume_token

        command = f"python3 {shlex.quote(worker_remote_path())} {shlex.quote(message)}"
        stream = manager.stream_command(
            sandbox_id,
            command,
            cwd=AGENT_PROJECT_DIR,
            envs=envs,
            timeout_seconds=self._message_timeout_seconds,
        )

        parser = AgentEventParser()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._message_timeout_seconds
        buffer = ""
        saw_stdout = False

        try:
            while True:
                next_item = asyncio.ensure_future(_next_or_none(stream))
                stop_wait = asyncio.ensure_future(cancel_event.wait())
                done, _ = await asyncio.wait(
                    {next_item, stop_wait},
                    timeout=max(deadline - loop.time(), 0),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                stop_wait.cancel()

                if next_item not in done:
                    next_item.cancel()
                    await asyncio.wait({next_item})
                    if stop_wait in done:
                        return
                    raise CommandTimeoutError(
                        f"Agent did not finish within {self._message_timeout_seconds}s"
                    )

                item = next_item.result()
                if item is None:
                    return

                if isinstance(item, CommandResult):
                    if saw_stdout:
                        # Whatever is left without a trailing newline
                        events = list(parser.iter_events([buffer]))
                    else:
                        events = parser.parse_output(item.stdout)
                    for event in events:
                        yield event
                    if parser.skipped_lines:
                        logger.info(
                            f"Dropped {parser.skipped_lines} non-event lines "
                            "from agent output"
                        )
                    yield item
                    return

                stream_name, chunk = item
                if stream_name != "stdout":
                    continue

                saw_stdout = True
                buffer += chunk
                *lines, buffer = buffer.split("\n")
                for event in parser.iter_events(lines):
                    yield event
        finally:
            await stream.aclose()

    def _stopped(self, project_id: UUID) -> AgentErrorEvent:
        logger.info(f"Agent turn for project {project_id} was stopped")
        return make_error_event(STOPPED_MESSAGE, "cancelled")

    def _consume_event(
        self, event: AgentRuntimeEvent, state: AgentTurnState
    ) -> list[StreamPacket]:
        """Accumulate an event and return the packets to forward for it."""
        if isinstance(event, AgentMessageEvent):
            state.add_message_chunk(event.data.content)
            return [event]

        if isinstance(event, AgentToolCallEvent):
            state.add_tool_call(event.data)
            return [event]

        if isinstance(event, AgentToolResultEvent):
            record = state.add_tool_result(event.data)
            packets: list[StreamPacket] = [event]
            if (
                record is not None
                and record["name"] in FILE_WRITING_TOOLS
                and not event.data.is_error
                and isinstance(record["input"].get("file_path"), str)
            ):
                packets.append(
                    FileChangedPacket(
                        data=FileChangedData(
                            path=record["input"]["file_path"],
                            tool=record["name"],
                            tool_use_id=event.data.tool_use_id,
                        )
                    )
                )
            return packets

        if isinstance(event, AgentDoneEvent):
            state.session_id = event.data.session_id
            return []

        if isinstance(event, AgentErrorEvent):
            state.agent_error = event.data.message
            return []

        if isinstance(event, AgentThinkingEvent):
            return [event]

        logger.warning(f"Unhandled agent event type: {type(event).__name__}")
        return []

    async def _finish_turn(
        self,
        manager: SandboxLifecycleManager,
        db_session: AsyncSession,
        sandbox_id: str,
        conversation_id: UUID,
        state: AgentTurnState,
    ) -> None:
        if state.has_content:
            await create_message(
                db_session,
                conversation_id,
                MessageRole.ASSISTANT,
                state.content,
                tool_calls=state.tool_calls or None,
            )
            state.persisted = True
        if state.session_id:
            await manager.update_agent_session(sandbox_id, state.session_id)
        await manager.touch(sandbox_id)

    async def _save_partial(
        self,
        manager: SandboxLifecycleManager,
        db_session: AsyncSession,
        sandbox_id: str | None,
        conversation_id: UUID | None,
        state: AgentTurnState,
    ) -> None:
        """Store whatever a failed turn produced. Never raises."""
        try:
            await db_session.rollback()
            if (
                conversation_id is not None
                and state.has_content
                and not state.persisted
            ):
                await create_message(
                    db_session,
                    conversation_id,
                    MessageRole.ASSISTANT,
                    state.content,
                    tool_calls=state.tool_calls or None,
                )
            if sandbox_id is not None:
                await manager.touch(sandbox_id)
        except Exception:
            logger.exception("Failed to store partial agent turn")
