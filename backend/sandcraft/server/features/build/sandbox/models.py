"""Pydantic models for sandbox provider communication."""

from datetime import datetime

from pydantic import BaseModel


class CommandResult(BaseModel):
    """Captured output of a command run inside a sandbox."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class FilesystemEntry(BaseModel):
    """Represents a file or directory entry in the sandbox filesystem.

    Used for directory listing operations.
    """

    name: str
    path: str
    is_directory: bool
    size_bytes: int | None = None
    modified_at: datetime | None = None
