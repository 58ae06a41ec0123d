"""Background sweep that pauses idle sandboxes and terminates stale paused ones."""

import asyncio
import contextlib
import datetime
from collections.abc import Awaitable
from collections.abc import Callable
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import async_sessionmaker

from sandcraft.configs.contextvars import CURRENT_PROJECT_ID_CONTEXTVAR
from sandcraft.db.enums import SandboxState
from sandcraft.server.features.build.agent.registry import get_in_flight_registry
from sandcraft.server.features.build.agent.registry import InFlightRegistry
from sandcraft.server.features.build.configs import SANDBOX_CLEANUP_INTERVAL_SECONDS
from sandcraft.server.features.build.configs import SANDBOX_IDLE_TIMEOUT_SECONDS
from sandcraft.server.features.build.configs import SANDBOX_MAX_HIBERNATION_SECONDS
from sandcraft.server.features.build.db.sandbox import (
    get_sandboxes_in_state_inactive_since,
)
from sandcraft.server.features.build.errors import SandboxNotFoundError
from sandcraft.server.features.build.sandbox.base import SandboxProvider
from sandcraft.server.features.build.sandbox.manager import SandboxHandleCache
from sandcraft.server.features.build.sandbox.manager import SandboxLifecycleManager
from sandcraft.utils.logger import setup_logger

logger = setup_logger()


class CleanupResult(BaseModel):
    paused_count: int = 0
    terminated_count: int = 0


class SandboxIdleReaper:
    """Periodically pauses idle sandboxes and terminates long-paused ones.

    A cycle:
    1. Pauses every running sandbox inactive for longer than idle_timeout
       (marking it terminated if the provider already reclaimed it)
    2. Terminates every paused sandbox inactive for longer than max_hibernation

    Each sandbox is handled independently. A failure is logged and the sweep
    moves on; the next cycle retries it. Projects with an agent turn in flight
    are skipped.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: SandboxProvider | None = None,
        handle_cache: SandboxHandleCache | None = None,
        registry: InFlightRegistry | None = None,
        idle_timeout_seconds: int = SANDBOX_IDLE_TIMEOUT_SECONDS,
        max_hibernation_seconds: int = SANDBOX_MAX_HIBERNATION_SECONDS,
        interval_seconds: float = SANDBOX_CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider
        self._handle_cache = handle_cache
        self._registry = registry if registry is not None else get_in_flight_registry()
        self._idle_timeout = datetime.timedelta(seconds=idle_timeout_seconds)
        self._max_hibernation = datetime.timedelta(seconds=max_hibernation_seconds)
        self._interval_seconds = interval_seconds

        self._task: asyncio.Task[None] | None = None
        # Prevents overlapping cycles within this process
        self._cycle_lock = asyncio.Lock()

    @property
    def is_started(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_started:
            return

        self._task = asyncio.create_task(
            self._run_forever(), name="sandbox-idle-reaper"
        )
        logger.notice(
            f"Sandbox idle reaper started (interval={self._interval_seconds}s, "
            f"idle_timeout={self._idle_timeout.total_seconds()}s, "
            f"max_hibernation={self._max_hibernation.total_seconds()}s)"
        )

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.notice("Sandbox idle reaper stopped")

    async def _run_forever(self) -> None:
        while True:
            await self.run_cleanup()
            await asyncio.sleep(self._interval_seconds)

    async def run_cleanup(self) -> CleanupResult | None:
        """Run one cycle unless another one is already in progress.

        Never raises, the timer loop must survive a bad cycle.
        """
        if self._cycle_lock.locked():
            logger.debug("Sandbox cleanup cycle already running, skipping")
            return None

        async with self._cycle_lock:
            try:
                return await self._cleanup_cycle()
            except Exception:
                logger.exception("Error in sandbox cleanup cycle")
                return None

    async def trigger_cleanup(self) -> CleanupResult:
        """Run one cycle now, waiting for an in-progress one to finish first."""
        async with self._cycle_lock:
            return await self._cleanup_cycle()

    async def _cleanup_cycle(self) -> CleanupResult:
        now = datetime.datetime.now(datetime.timezone.utc)
        result = CleanupResult()

        async with self._session_factory() as db_session:
            manager = SandboxLifecycleManager(
                db_session, provider=self._provider, handle_cache=self._handle_cache
            )

            async def pause(sandbox_id: str) -> None:
                try:
                    await manager.pause(sandbox_id)
                    result.paused_count += 1
                except SandboxNotFoundError:
                    logger.info(
                        f"Idle sandbox {sandbox_id} was reclaimed by the provider, "
                        "terminating its record"
                    )
                    await manager.terminate(sandbox_id)
                    result.terminated_count += 1

            idle = await get_sandboxes_in_state_inactive_since(
                db_session, SandboxState.RUNNING, now - self._idle_timeout
            )
            # Plain values only, ORM rows are expired by a rollback
            idle_candidates = [(sandbox.id, sandbox.project_id) for sandbox in idle]
            for sandbox_id, project_id in idle_candidates:
                await self._apply(db_session, project_id, sandbox_id, pause)

            hibernating = await get_sandboxes_in_state_inactive_since(
                db_session, SandboxState.PAUSED, now - self._max_hibernation
            )
            stale_candidates = [
                (sandbox.id, sandbox.project_id) for sandbox in hibernating
            ]
            for sandbox_id, project_id in stale_candidates:
                if await self._apply(
                    db_session, project_id, sandbox_id, manager.terminate
                ):
                    result.terminated_count += 1

        if result.paused_count or result.terminated_count:
            logger.notice(
                f"Sandbox cleanup paused {result.paused_count} and "
                f"terminated {result.terminated_count} sandboxes"
            )
        return result

    async def _apply(
        self,
        db_session: AsyncSession,
        project_id: UUID,
        sandbox_id: str,
        operation: Callable[[str], Awaitable[object]],
    ) -> bool:
        if self._registry.is_running(project_id):
            logger.debug(f"Skipping sandbox {sandbox_id}, agent turn in flight")
            return False

        token = CURRENT_PROJECT_ID_CONTEXTVAR.set(str(project_id))
        try:
            await operation(sandbox_id)
            return True
        except Exception as e:
            action = getattr(operation, "__name__", "clean up")
            logger.warning(
                f"Failed to {action} sandbox {sandbox_id}, will retry next cycle: {e}"
            )
            await db_session.rollback()
            return False
        finally:
            CURRENT_PROJECT_ID_CONTEXTVAR.reset(token)
