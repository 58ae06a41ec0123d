"""E2B implementation of the sandbox provider contract.

Every SDK call is wrapped so that E2B exceptions are translated into the
build error taxonomy before they reach the lifecycle manager.
"""

from collections.abc import Awaitable
from collections.abc import Callable
from functools import wraps
from typing import Any
from typing import ParamSpec
from typing import TypeVar

from e2b import AsyncSandbox
from e2b import CommandExitException
from e2b import FileType
from e2b.exceptions import AuthenticationException
from e2b.exceptions import NotFoundException
from e2b.exceptions import TimeoutException

from sandcraft.server.features.build.configs import E2B_API_KEY
from sandcraft.server.features.build.configs import E2B_TEMPLATE_ID
from sandcraft.server.features.build.configs import SANDBOX_PROVIDER_TIMEOUT_SECONDS
from sandcraft.server.features.build.errors import BuildError
from sandcraft.server.features.build.errors import CommandTimeoutError
from sandcraft.server.features.build.errors import NotFoundError
from sandcraft.server.features.build.errors import ProviderUnavailableError
from sandcraft.server.features.build.errors import ProvisionFailedError
from sandcraft.server.features.build.errors import SandboxNotFoundError
from sandcraft.server.features.build.sandbox.base import OutputCallback
from sandcraft.server.features.build.sandbox.base import SandboxHandle
from sandcraft.server.features.build.sandbox.base import SandboxProvider
from sandcraft.server.features.build.sandbox.models import CommandResult
from sandcraft.server.features.build.sandbox.models import FilesystemEntry
from sandcraft.utils.logger import setup_logger

logger = setup_logger()

P = ParamSpec("P")
R = TypeVar("R")


def _translate_e2b_errors(
    func: Callable[P, Awaitable[R]],
) -> Callable[P, Awaitable[R]]:
    @wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        try:
            return await func(*args, **kwargs)
        except BuildError:
            raise
        except NotFoundException as e:
            raise SandboxNotFoundError(f"{func.__name__}: {e}") from e
        except TimeoutException as e:
            raise CommandTimeoutError(f"{func.__name__} timed out: {e}") from e
        except AuthenticationException as e:
            raise ProviderUnavailableError(
                f"E2B rejected the API key during {func.__name__}"
            ) from e
        except Exception as e:
            raise ProviderUnavailableError(f"Failed to {func.__name__}: {e}") from e

    return wrapper


class E2BSandboxHandle(SandboxHandle):
    """Wraps a connected `e2b.AsyncSandbox`.

    A missing path is a NotFoundError. Any other NotFoundException means the
    sandbox itself is gone.
    """

    def __init__(self, sandbox: AsyncSandbox) -> None:
        self._sandbox = sandbox

    @property
    def sandbox_id(self) -> str:
        return self._sandbox.sandbox_id

    @property
    def sandbox(self) -> AsyncSandbox:
        return self._sandbox

    @_translate_e2b_errors
    async def is_running(self) -> bool:
        return await self._sandbox.is_running()

    @_translate_e2b_errors
    async def list_files(self, path: str) -> list[FilesystemEntry]:
        try:
            entries = await self._sandbox.files.list(path)
        except NotFoundException as e:
            raise NotFoundError(f"No such directory: {path}") from e
        return [
            FilesystemEntry(
                name=entry.name,
                path=entry.path,
                is_directory=entry.type == FileType.DIR,
                size_bytes=getattr(entry, "size", None),
                modified_at=getattr(entry, "modified_time", None),
            )
            for entry in entries
        ]

    @_translate_e2b_errors
    async def read_file(self, path: str) -> str:
        try:
            return await self._sandbox.files.read(path, format="text")
        except NotFoundException as e:
            raise NotFoundError(f"No such file: {path}") from e

    @_translate_e2b_errors
    async def write_file(self, path: str, content: str) -> None:
        await self._sandbox.files.write(path, content)

    @_translate_e2b_errors
    async def delete_file(self, path: str) -> None:
        try:
            await self._sandbox.files.remove(path)
        except NotFoundException as e:
            raise NotFoundError(f"No such file: {path}") from e

    @_translate_e2b_errors
    async def make_dir(self, path: str) -> None:
        # Returns False when the directory already exists, which is fine here
        await self._sandbox.files.make_dir(path)

    @_translate_e2b_errors
    async def run_command(
        self,
        command: str,
        cwd: str | None = None,
        envs: dict[str, str] | None = None,
        timeout_seconds: float | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> CommandResult:
        try:
            result = await self._sandbox.commands.run(
                command,
                cwd=cwd,
                envs=envs,
                timeout=timeout_seconds,
                on_stdout=on_stdout,
                on_stderr=on_stderr,
            )
        except CommandExitException as e:
            # The SDK raises on non-zero exit, callers expect it in the result
            return CommandResult(
                stdout=e.stdout, stderr=e.stderr, exit_code=e.exit_code
            )

        return CommandResult(
            stdout=result.stdout, stderr=result.stderr, exit_code=result.exit_code
        )

    def exposed_url(self, port: int) -> str:
        return f"https://{self._sandbox.get_host(port)}"


class E2BSandboxProvider(SandboxProvider):
    def __init__(
        self,
        api_key: str | None = E2B_API_KEY,
        template_id: str | None = E2B_TEMPLATE_ID,
        timeout_seconds: int = SANDBOX_PROVIDER_TIMEOUT_SECONDS,
    ) -> None:
        self._api_key = api_key
        self._template_id = template_id
        self._timeout_seconds = timeout_seconds

    async def create_sandbox(self, metadata: dict[str, str]) -> SandboxHandle:
        create_kwargs: dict[str, Any] = {
            "api_key": self._api_key,
            "metadata": metadata,
            "timeout": self._timeout_seconds,
        }
        if self._template_id:
            create_kwargs["template"] = self._template_id

        try:
            sandbox = await AsyncSandbox.create(**create_kwargs)
        except Exception as e:
            logger.error(f"E2B sandbox creation failed: {e}")
            raise ProvisionFailedError(f"Failed to create sandbox: {e}") from e

        logger.info(f"Created E2B sandbox {sandbox.sandbox_id}")
        return E2BSandboxHandle(sandbox)

    @_translate_e2b_errors
    async def connect(self, sandbox_id: str) -> SandboxHandle:
        # Connecting to a paused sandbox resumes it
        sandbox = await AsyncSandbox.connect(
            sandbox_id, api_key=self._api_key, timeout=self._timeout_seconds
        )
        return E2BSandboxHandle(sandbox)

    @_translate_e2b_errors
    async def pause(self, handle: SandboxHandle) -> None:
        if not isinstance(handle, E2BSandboxHandle):
            raise TypeError(f"Expected an E2B handle, got {type(handle).__name__}")
        await handle.sandbox.pause()

    @_translate_e2b_errors
    async def kill(self, sandbox_id: str) -> None:
        killed = await AsyncSandbox.kill(sandbox_id, api_key=self._api_key)
        if not killed:
            raise SandboxNotFoundError(f"Sandbox {sandbox_id} not found")
