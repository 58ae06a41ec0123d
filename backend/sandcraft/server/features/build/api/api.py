from fastapi import APIRouter
from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse

from sandcraft.server.features.build.api.agent_api import router as agent_router
from sandcraft.server.features.build.api.projects_api import router as projects_router
from sandcraft.server.features.build.api.sandbox_api import router as sandbox_router
from sandcraft.server.features.build.errors import BuildError
from sandcraft.server.features.build.errors import CommandTimeoutError
from sandcraft.server.features.build.errors import ConflictError
from sandcraft.server.features.build.errors import ForbiddenError
from sandcraft.server.features.build.errors import InvalidStateError
from sandcraft.server.features.build.errors import NotFoundError
from sandcraft.server.features.build.errors import ProviderUnavailableError
from sandcraft.server.features.build.errors import ProvisionFailedError
from sandcraft.utils.logger import setup_logger

logger = setup_logger()

router = APIRouter(prefix="/build")

# Include sub-routers for projects, agent turns and sandboxes
router.include_router(projects_router, tags=["build"])
router.include_router(agent_router, tags=["build"])
router.include_router(sandbox_router, tags=["build"])

# Checked in order, so subclasses come before their parents
_STATUS_CODES: list[tuple[type[BuildError], int]] = [
    (NotFoundError, 404),
    (ForbiddenError, 403),
    (ConflictError, 409),
    (InvalidStateError, 400),
    (ProvisionFailedError, 502),
    (ProviderUnavailableError, 503),
    (CommandTimeoutError, 504),
]


def status_code_for(error: BuildError) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


async def build_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, BuildError)
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code},
    )


def register_build_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BuildError, build_error_handler)
