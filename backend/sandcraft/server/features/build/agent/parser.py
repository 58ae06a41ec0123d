"""Parser for the newline-delimited JSON event stream printed by the agent worker."""

from collections.abc import Iterable
from collections.abc import Iterator

from pydantic import TypeAdapter
from pydantic import ValidationError

from sandcraft.server.features.build.agent.events import AgentRuntimeEvent
from sandcraft.server.features.build.errors import ParseSkippedError
from sandcraft.utils.logger import setup_logger

logger = setup_logger()

_event_adapter: TypeAdapter[AgentRuntimeEvent] = TypeAdapter(AgentRuntimeEvent)

# Keep log lines bounded when the worker prints something large
_MAX_LOGGED_LINE_CHARS = 200


def parse_agent_event_line(line: str) -> AgentRuntimeEvent:
    """Parse a single stdout line into an event.

    Raises:
        ParseSkippedError: the line is not a protocol event (blank, not JSON,
            unknown type, or a malformed payload)
    """
    stripped = line.strip()
    if not stripped:
        raise ParseSkippedError("Blank line")

    try:
        return _event_adapter.validate_json(stripped)
    except ValidationError as e:
        raise ParseSkippedError(
            f"Not an agent event ({e.error_count()} validation errors)"
        ) from e


class AgentEventParser:
    """Turns raw worker output into events, dropping non-protocol lines.

    Tracks how many lines were skipped so callers can report it.
    """

    def __init__(self) -> None:
        self.skipped_lines = 0

    def iter_events(self, lines: Iterable[str]) -> Iterator[AgentRuntimeEvent]:
        for line in lines:
            if not line.strip():
                continue
            try:
                yield parse_agent_event_line(line)
            except ParseSkippedError as e:
                self.skipped_lines += 1
                logger.warning(
                    f"Skipping non-event agent output: {e} "
                    f"line={line[:_MAX_LOGGED_LINE_CHARS]!r}"
                )

    def parse_output(self, stdout: str) -> list[AgentRuntimeEvent]:
        return list(self.iter_events(stdout.splitlines()))
