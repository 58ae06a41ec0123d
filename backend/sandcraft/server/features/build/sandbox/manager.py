"""Sandbox lifecycle management.

SandboxLifecycleManager is the single authority for sandbox state transitions
and the only component that calls the provider's lifecycle primitives:

    (none) --create()--> running
    running --pause()--> paused
    paused --resume()/ensure_running()--> running
    running|paused --terminate()--> terminated
    terminated --ensure_running()--> fresh create cycle

The durable record is authoritative. SandboxHandleCache only saves reconnect
round-trips within one process.
"""

import asyncio
from collections.abc import AsyncGenerator
from collections.abc import Awaitable
from typing import TypeVar
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from sandcraft.db.enums import SandboxState
from sandcraft.db.models import Sandbox
from sandcraft.server.features.build.configs import DEFAULT_COMMAND_TIMEOUT_SECONDS
from sandcraft.server.features.build.db.project import get_project
from sandcraft.server.features.build.db.sandbox import get_sandbox_by_id
from sandcraft.server.features.build.db.sandbox import get_sandbox_by_project_id
from sandcraft.server.features.build.db.sandbox import touch_sandbox
from sandcraft.server.features.build.db.sandbox import touch_sandbox__no_commit
from sandcraft.server.features.build.db.sandbox import update_agent_session_id
from sandcraft.server.features.build.db.sandbox import update_preview_url
from sandcraft.server.features.build.db.sandbox import update_sandbox_state__no_commit
from sandcraft.server.features.build.db.sandbox import upsert_sandbox__no_commit
from sandcraft.server.features.build.errors import ConflictError
from sandcraft.server.features.build.errors import InvalidStateError
from sandcraft.server.features.build.errors import NotFoundError
from sandcraft.server.features.build.errors import ProviderUnavailableError
from sandcraft.server.features.build.errors import ProvisionFailedError
from sandcraft.server.features.build.errors import SandboxNotFoundError
from sandcraft.server.features.build.sandbox.base import get_sandbox_provider
from sandcraft.server.features.build.sandbox.base import SandboxHandle
from sandcraft.server.features.build.sandbox.base import SandboxProvider
from sandcraft.server.features.build.sandbox.models import CommandResult
from sandcraft.server.features.build.sandbox.models import FilesystemEntry
from sandcraft.utils.logger import setup_logger

logger = setup_logger()

T = TypeVar("T")


class SandboxHandleCache:
    """Process-wide map of sandbox id -> open provider handle.

    Last writer wins. Losing an entry only costs a reconnect.
    """

    def __init__(self) -> None:
        self._handles: dict[str, SandboxHandle] = {}

    def get(self, sandbox_id: str) -> SandboxHandle | None:
        return self._handles.get(sandbox_id)

    def put(self, handle: SandboxHandle) -> None:
        self._handles[handle.sandbox_id] = handle

    def evict(self, sandbox_id: str) -> None:
        self._handles.pop(sandbox_id, None)

    def clear(self) -> None:
        self._handles.clear()

    def __contains__(self, sandbox_id: object) -> bool:
        return sandbox_id in self._handles


_handle_cache_instance: SandboxHandleCache | None = None


def get_sandbox_handle_cache() -> SandboxHandleCache:
    global _handle_cache_instance

    if _handle_cache_instance is None:
        _handle_cache_instance = SandboxHandleCache()
    return _handle_cache_instance


class SandboxLifecycleManager:
    """Drives a project's sandbox through its state machine.

    Bound to one database session, like a unit of work. Each public
    transition commits its own changes. The provider and handle cache are
    process-wide and default to the singletons.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        provider: SandboxProvider | None = None,
        handle_cache: SandboxHandleCache | None = None,
    ) -> None:
        self._db_session = db_session
        self._provider = provider or get_sandbox_provider()
        self._handle_cache = (
            handle_cache if handle_cache is not None else get_sandbox_handle_cache()
        )

    # =========================================================================
    # Lookups
    # =========================================================================

    async def get_sandbox(self, project_id: UUID) -> Sandbox | None:
        return await get_sandbox_by_project_id(self._db_session, project_id)

    async def _get_sandbox_or_raise(self, sandbox_id: str) -> Sandbox:
        sandbox = await get_sandbox_by_id(self._db_session, sandbox_id)
        if sandbox is None:
            raise NotFoundError(f"Sandbox {sandbox_id} not found")
        return sandbox

    async def get_handle(self, sandbox_id: str) -> SandboxHandle:
        """Return the cached live handle, connecting and caching on a miss."""
        handle = self._handle_cache.get(sandbox_id)
        if handle is not None:
            return handle

        handle = await self._provider.connect(sandbox_id)
        self._handle_cache.put(handle)
        return handle

    # =========================================================================
    # Transitions
    # =========================================================================

    async def create(self, project_id: UUID) -> Sandbox:
        """Provision a new sandbox for the project and record it as running.

        Raises:
            NotFoundError: the project does not exist
            ConflictError: a non-terminated sandbox already exists
            ProvisionFailedError: the provider could not create the sandbox
        """
        project = await get_project(self._db_session, project_id)
        if project is None:
            raise NotFoundError(f"Project {project_id} not found")

        existing = await get_sandbox_by_project_id(self._db_session, project_id)
        if existing is not None and existing.state != SandboxState.TERMINATED:
            raise ConflictError(
                f"Sandbox {existing.id} already exists for project {project_id} "
                f"in state {existing.state.value}"
            )

        try:
            handle = await self._provider.create_sandbox(
                metadata={"projectId": str(project_id)}
            )
        except ProvisionFailedError:
            raise
        except Exception as e:
            raise ProvisionFailedError(f"Failed to create sandbox: {e}") from e

        try:
            sandbox = await upsert_sandbox__no_commit(
                self._db_session,
                project_id=project_id,
                sandbox_id=handle.sandbox_id,
                state=SandboxState.RUNNING,
            )
            await self._db_session.commit()
        except Exception:
            # Nothing durable may point at the new remote sandbox, so drop it
            await self._db_session.rollback()
            logger.error(
                f"Failed to record sandbox {handle.sandbox_id} for project "
                f"{project_id}, killing it"
            )
            await self._kill_tolerantly(handle.sandbox_id)
            raise

        self._handle_cache.put(handle)
        logger.info(f"Created sandbox {sandbox.id} for project {project_id}")
        return sandbox

    async def ensure_running(self, project_id: UUID) -> Sandbox:
        """Converge the project's sandbox to `running` from any starting state.

        A record that claims to be live is verified against the provider. Only
        when the provider reports the sandbox gone (reclaimed, or no longer
        running) is the record marked terminated and a fresh cycle started.
        Any other provider failure propagates and leaves the record as it was.

        Raises:
            ProvisionFailedError: a fresh sandbox could not be created
            ProviderUnavailableError: the provider could not be reached
        """
        sandbox = await get_sandbox_by_project_id(self._db_session, project_id)

        if sandbox is None or sandbox.state == SandboxState.TERMINATED:
            return await self.create(project_id)

        sandbox_id = sandbox.id

        if sandbox.state == SandboxState.PAUSED:
            try:
                return await self.resume(sandbox_id)
            except SandboxNotFoundError as e:
                logger.warning(
                    f"Paused sandbox {sandbox_id} is gone, starting a fresh one: {e}"
                )
                await self.terminate(sandbox_id)
                return await self.create(project_id)

        # creating or running: trust only after asking the provider
        if await self._is_alive(sandbox_id):
            await touch_sandbox__no_commit(self._db_session, sandbox_id)
            if sandbox.state != SandboxState.RUNNING:
                sandbox.state = SandboxState.RUNNING
            await self._db_session.commit()
            return sandbox

        logger.warning(
            f"Sandbox {sandbox_id} for project {project_id} is no longer alive, "
            "recreating"
        )
        await self.terminate(sandbox_id)
        return await self.create(project_id)

    async def pause(self, sandbox_id: str) -> Sandbox:
        """Pause a running sandbox, persisting its full state remotely.

        Raises:
            NotFoundError: unknown sandbox id
            InvalidStateError: the sandbox is not running
            ProviderUnavailableError: the provider did not pause it
        """
        sandbox = await self._get_sandbox_or_raise(sandbox_id)
        if sandbox.state != SandboxState.RUNNING:
            raise InvalidStateError(
                f"Cannot pause sandbox {sandbox_id} in state {sandbox.state.value}"
            )

        try:
            handle = await self.get_handle(sandbox_id)
            await self._provider.pause(handle)
        except SandboxNotFoundError:
            self._handle_cache.evict(sandbox_id)
            raise
        except ProviderUnavailableError:
            raise
        except Exception as e:
            raise ProviderUnavailableError(
                f"Failed to pause sandbox {sandbox_id}: {e}"
            ) from e

        self._handle_cache.evict(sandbox_id)
        sandbox = await update_sandbox_state__no_commit(
            self._db_session, sandbox_id, SandboxState.PAUSED, touch=True
        )
        await self._db_session.commit()
        logger.info(f"Paused sandbox {sandbox_id}")
        return sandbox

    async def resume(self, sandbox_id: str) -> Sandbox:
        """Resume a paused sandbox by reconnecting to it.

        Raises:
            NotFoundError: unknown sandbox id
            InvalidStateError: the sandbox is not paused
            ProviderUnavailableError: the provider did not resume it
        """
        sandbox = await self._get_sandbox_or_raise(sandbox_id)
        if sandbox.state != SandboxState.PAUSED:
            raise InvalidStateError(
                f"Cannot resume sandbox {sandbox_id} in state {sandbox.state.value}"
            )

        try:
            handle = await self._provider.connect(sandbox_id)
        except ProviderUnavailableError:
            raise
        except Exception as e:
            raise ProviderUnavailableError(
                f"Failed to resume sandbox {sandbox_id}: {e}"
            ) from e

        self._handle_cache.put(handle)
        sandbox = await update_sandbox_state__no_commit(
            self._db_session, sandbox_id, SandboxState.RUNNING, touch=True
        )
        await self._db_session.commit()
        logger.info(f"Resumed sandbox {sandbox_id}")
        return sandbox

    async def terminate(self, sandbox_id: str) -> Sandbox | None:
        """Kill the remote sandbox and mark the record terminated.

        Idempotent: an unknown id or an already terminated record is a no-op.
        Provider failures are logged and do not block the transition.
        """
        sandbox = await get_sandbox_by_id(self._db_session, sandbox_id)
        if sandbox is None:
            logger.debug(f"Sandbox {sandbox_id} not found, nothing to terminate")
            return None
        if sandbox.state == SandboxState.TERMINATED:
            return sandbox

        await self._kill_tolerantly(sandbox_id)
        return await self._mark_terminated(sandbox_id)

    # =========================================================================
    # Activity bookkeeping
    # =========================================================================

    async def touch(self, sandbox_id: str) -> None:
        await touch_sandbox(self._db_session, sandbox_id)

    async def update_agent_session(self, sandbox_id: str, session_id: str) -> None:
        await update_agent_session_id(self._db_session, sandbox_id, session_id)

    # =========================================================================
    # Filesystem and command operations (require a running sandbox)
    # =========================================================================

    async def list_files(
        self, sandbox_id: str, path: str = "/"
    ) -> list[FilesystemEntry]:
        handle = await self._get_running_handle(sandbox_id)
        entries = await self._on_handle(sandbox_id, handle.list_files(path))
        await self.touch(sandbox_id)
        return entries

    async def read_file(self, sandbox_id: str, path: str) -> str:
        handle = await self._get_running_handle(sandbox_id)
        content = await self._on_handle(sandbox_id, handle.read_file(path))
        await self.touch(sandbox_id)
        return content

    async def write_file(self, sandbox_id: str, path: str, content: str) -> None:
        handle = await self._get_running_handle(sandbox_id)
        await self._on_handle(sandbox_id, handle.write_file(path, content))
        await self.touch(sandbox_id)

    async def delete_file(self, sandbox_id: str, path: str) -> None:
        handle = await self._get_running_handle(sandbox_id)
        await self._on_handle(sandbox_id, handle.delete_file(path))
        await self.touch(sandbox_id)

    async def make_dir(self, sandbox_id: str, path: str) -> None:
        handle = await self._get_running_handle(sandbox_id)
        await self._on_handle(sandbox_id, handle.make_dir(path))
        await self.touch(sandbox_id)

    async def execute_command(
        self,
        sandbox_id: str,
        command: str,
        cwd: str | None = None,
        envs: dict[str, str] | None = None,
        timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    ) -> CommandResult:
        """Run a command to completion inside a running sandbox.

        Raises:
            CommandTimeoutError: the command exceeded timeout_seconds
        """
        handle = await self._get_running_handle(sandbox_id)
        result = await self._on_handle(
            sandbox_id,
            handle.run_command(
                command, cwd=cwd, envs=envs, timeout_seconds=timeout_seconds
            ),
        )
        await self.touch(sandbox_id)
        return result

    async def stream_command(
        self,
        sandbox_id: str,
        command: str,
        cwd: str | None = None,
        envs: dict[str, str] | None = None,
        timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    ) -> AsyncGenerator[tuple[str, str] | CommandResult, None]:
        """Run a command, yielding ("stdout" | "stderr", chunk) as output arrives.

        The final item is the CommandResult.
        """
        handle = await self._get_running_handle(sandbox_id)
        # None marks the end of output
        chunks: asyncio.Queue[tuple[str, str] | None] = asyncio.Queue()

        task = asyncio.create_task(
            self._on_handle(
                sandbox_id,
                handle.run_command(
                    command,
                    cwd=cwd,
                    envs=envs,
                    timeout_seconds=timeout_seconds,
                    on_stdout=lambda data: chunks.put_nowait(("stdout", data)),
                    on_stderr=lambda data: chunks.put_nowait(("stderr", data)),
                ),
            )
        )
        task.add_done_callback(lambda _: chunks.put_nowait(None))
        try:
            while (chunk := await chunks.get()) is not None:
                yield chunk
            result = task.result()
        finally:
            if not task.done():
                task.cancel()

        await self.touch(sandbox_id)
        yield result

    async def get_preview_url(self, sandbox_id: str, port: int) -> str:
        """Public URL for `port` in the sandbox, remembered as the preview URL."""
        handle = await self._get_running_handle(sandbox_id)
        url = handle.exposed_url(port)
        await update_preview_url(self._db_session, sandbox_id, url)
        await self.touch(sandbox_id)
        return url

    # =========================================================================
    # Internals
    # =========================================================================

    async def _get_running_handle(self, sandbox_id: str) -> SandboxHandle:
        sandbox = await self._get_sandbox_or_raise(sandbox_id)
        if sandbox.state != SandboxState.RUNNING:
            raise InvalidStateError(
                f"Sandbox {sandbox_id} is {sandbox.state.value}, not running"
            )
        try:
            return await self.get_handle(sandbox_id)
        except SandboxNotFoundError:
            self._handle_cache.evict(sandbox_id)
            raise

    async def _on_handle(self, sandbox_id: str, call: Awaitable[T]) -> T:
        """Await a handle call, dropping the cached handle if the sandbox vanished."""
        try:
            return await call
        except SandboxNotFoundError:
            self._handle_cache.evict(sandbox_id)
            raise

    async def _is_alive(self, sandbox_id: str) -> bool:
        try:
            handle = await self.get_handle(sandbox_id)
            alive = await handle.is_running()
        except SandboxNotFoundError as e:
            logger.warning(f"Sandbox {sandbox_id} is gone on the provider: {e}")
            alive = False

        if not alive:
            self._handle_cache.evict(sandbox_id)
        return alive

    async def _kill_tolerantly(self, sandbox_id: str) -> None:
        try:
            await self._provider.kill(sandbox_id)
        except SandboxNotFoundError:
            logger.info(f"Sandbox {sandbox_id} was already gone on the provider")
        except Exception as e:
            logger.warning(f"Failed to kill sandbox {sandbox_id}, ignoring: {e}")

    async def _mark_terminated(self, sandbox_id: str) -> Sandbox:
        self._handle_cache.evict(sandbox_id)
        sandbox = await update_sandbox_state__no_commit(
            self._db_session, sandbox_id, SandboxState.TERMINATED
        )
        await self._db_session.commit()
        logger.info(f"Terminated sandbox {sandbox_id}")
        return sandbox
