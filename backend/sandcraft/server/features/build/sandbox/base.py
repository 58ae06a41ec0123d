"""Abstract provider contract and factory for remote sandboxes.

SandboxProvider is the narrow surface the lifecycle manager uses to talk to a
remote execution service. Use get_sandbox_provider() to get the implementation
selected by SANDBOX_PROVIDER.

IMPORTANT: Provider implementations must NOT interface with the database.
Durable state is owned by SandboxLifecycleManager.
"""

import threading
from abc import ABC
from abc import abstractmethod
from collections.abc import Callable

from sandcraft.server.features.build.configs import SANDBOX_PROVIDER
from sandcraft.server.features.build.configs import SandboxProviderType
from sandcraft.server.features.build.sandbox.models import CommandResult
from sandcraft.server.features.build.sandbox.models import FilesystemEntry
from sandcraft.utils.logger import setup_logger

logger = setup_logger()

OutputCallback = Callable[[str], None]


class SandboxHandle(ABC):
    """An open connection to one running remote sandbox."""

    @property
    @abstractmethod
    def sandbox_id(self) -> str:
        """Provider-assigned id of the sandbox."""
        ...

    @abstractmethod
    async def is_running(self) -> bool:
        """Ask the provider whether the sandbox is still alive.

        Returns False when the provider has reclaimed it. Transport failures
        are raised as ProviderUnavailableError.
        """
        ...

    @abstractmethod
    async def list_files(self, path: str) -> list[FilesystemEntry]: ...

    @abstractmethod
    async def read_file(self, path: str) -> str: ...

    @abstractmethod
    async def write_file(self, path: str, content: str) -> None: ...

    @abstractmethod
    async def delete_file(self, path: str) -> None: ...

    @abstractmethod
    async def make_dir(self, path: str) -> None: ...

    @abstractmethod
    async def run_command(
        self,
        command: str,
        cwd: str | None = None,
        envs: dict[str, str] | None = None,
        timeout_seconds: float | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> CommandResult:
        """Run a shell command to completion and capture its output.

        A non-zero exit code is returned in the result, not raised. The output
        callbacks, when given, receive chunks as the command produces them.

        Raises:
            CommandTimeoutError: the command exceeded timeout_seconds
            ProviderUnavailableError: the provider call itself failed
        """
        ...

    @abstractmethod
    def exposed_url(self, port: int) -> str:
        """Public URL routed to `port` inside the sandbox."""
        ...


class SandboxProvider(ABC):
    """Abstract interface for a remote sandbox service.

    Defines the lifecycle primitives:
    - Creation of a ready-to-use sandbox
    - Connecting to an existing one (auto-resumes a paused sandbox)
    - Pausing with full filesystem and memory persistence
    - Killing (idempotent)
    """

    @abstractmethod
    async def create_sandbox(self, metadata: dict[str, str]) -> SandboxHandle:
        """Provision a new sandbox. Returns once it is ready.

        Raises:
            ProvisionFailedError: the provider could not create the sandbox
        """
        ...

    @abstractmethod
    async def connect(self, sandbox_id: str) -> SandboxHandle:
        """Connect to an existing sandbox, resuming it if it is paused.

        Raises:
            SandboxNotFoundError: the provider no longer knows the sandbox
            ProviderUnavailableError: any other provider failure
        """
        ...

    @abstractmethod
    async def pause(self, handle: SandboxHandle) -> None:
        """Persist the sandbox state remotely and stop it.

        Raises:
            ProviderUnavailableError: the pause did not happen
        """
        ...

    @abstractmethod
    async def kill(self, sandbox_id: str) -> None:
        """Destroy the sandbox.

        Raises:
            SandboxNotFoundError: the sandbox was already gone
            ProviderUnavailableError: any other provider failure
        """
        ...


# Singleton instance cache for the provider
_sandbox_provider_instance: SandboxProvider | None = None
_sandbox_provider_lock = threading.Lock()


def get_sandbox_provider() -> SandboxProvider:
    """Get the SandboxProvider implementation selected by SANDBOX_PROVIDER."""
    global _sandbox_provider_instance

    if _sandbox_provider_instance is None:
        with _sandbox_provider_lock:
            if _sandbox_provider_instance is None:
                if SANDBOX_PROVIDER == SandboxProviderType.E2B:
                    from sandcraft.server.features.build.sandbox.e2b.provider import (
                        E2BSandboxProvider,
                    )

                    _sandbox_provider_instance = E2BSandboxProvider()
                    logger.info("Using E2BSandboxProvider for sandbox operations")
                else:
                    raise ValueError(f"Unknown sandbox provider: {SANDBOX_PROVIDER}")

    return _sandbox_provider_instance
