from enum import Enum as PyEnum


class SandboxState(str, PyEnum):
    CREATING = "creating"
    RUNNING = "running"
    PAUSED = "paused"
    TERMINATED = "terminated"

    def is_terminal(self) -> bool:
        return self == SandboxState.TERMINATED


class MessageRole(str, PyEnum):
    USER = "user"
    ASSISTANT = "assistant"
