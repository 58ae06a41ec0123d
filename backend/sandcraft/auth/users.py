from uuid import UUID

from fastapi import HTTPException
from fastapi import Request
from pydantic import BaseModel

from sandcraft.configs.app_configs import AUTH_DISABLED
from sandcraft.configs.app_configs import AUTH_USER_ID_HEADER
from sandcraft.configs.app_configs import DEV_USER_ID
from sandcraft.utils.logger import setup_logger

logger = setup_logger()


class User(BaseModel):
    """The caller, as vouched for by the upstream session layer."""

    id: UUID


def current_user(request: Request) -> User:
    """Resolve the authenticated user for a request.

    Session handling lives upstream. It forwards the user id in a trusted
    header, so all that is left here is to read and validate it.
    """
    if AUTH_DISABLED:
        return User(id=UUID(DEV_USER_ID))

    raw_user_id = request.headers.get(AUTH_USER_ID_HEADER)
    if not raw_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        return User(id=UUID(raw_user_id))
    except ValueError:
        logger.warning(f"Rejected malformed user id header: {raw_user_id!r}")
        raise HTTPException(status_code=401, detail="Not authenticated")
