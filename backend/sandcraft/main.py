from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from sandcraft.configs.app_configs import APP_API_PREFIX
from sandcraft.configs.app_configs import APP_HOST
from sandcraft.configs.app_configs import APP_PORT
from sandcraft.db.engine.sql_engine import SqlEngine
from sandcraft.server.features.build.api.api import register_build_exception_handlers
from sandcraft.server.features.build.api.api import router as build_router
from sandcraft.server.features.build.configs import SANDBOX_CLEANUP_ENABLED
from sandcraft.server.features.build.sandbox.tasks.cleanup import SandboxIdleReaper
from sandcraft.utils.logger import setup_logger

logger = setup_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # No-op if an engine was already installed
    SqlEngine.init_engine()

    reaper: SandboxIdleReaper | None = None
    if SANDBOX_CLEANUP_ENABLED:
        reaper = SandboxIdleReaper(SqlEngine.get_session_factory())
        reaper.start()
    else:
        logger.notice("Sandbox idle reaper disabled")

    try:
        yield
    finally:
        if reaper is not None:
            await reaper.stop()
        await SqlEngine.reset_engine()
        logger.notice("Sandcraft API server shut down")


def get_application() -> FastAPI:
    application = FastAPI(
        title="Sandcraft API",
        description="Per-project cloud sandboxes driven by a coding agent",
        version="0.1.0",
        lifespan=lifespan,
    )

    @application.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    application.include_router(build_router, prefix=APP_API_PREFIX)
    register_build_exception_handlers(application)

    return application


app = get_application()


if __name__ == "__main__":
    logger.notice(
        f"Starting Sandcraft API server on http://{APP_HOST}:{str(APP_PORT)}/"
    )
    uvicorn.run(app, host=APP_HOST, port=APP_PORT)
