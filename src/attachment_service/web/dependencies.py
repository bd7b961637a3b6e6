import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from fastapi import HTTPException, Request, status

from attachment_service.services.attachments import (
    AttachmentService,
    CallerIdentity,
    SecurityRealm,
)
from attachment_service.web.auth import TokenVerifier, extract_bearer_token

if TYPE_CHECKING:
    from attachment_service.config_models import AppConfig

logger = logging.getLogger(__name__)


def _get_state(request: Request, name: str) -> object:
    value = getattr(request.app.state, name, None)
    if value is None:
        logger.error(f"{name} not found in app state.")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{name} not configured or available.",
        )
    return value


async def get_attachment_service(request: Request) -> AttachmentService:
    """Retrieves the AttachmentService instance from app state."""
    return _get_state(request, "attachment_service")  # type: ignore[return-value]


async def get_app_config(request: Request) -> "AppConfig":
    return _get_state(request, "config")  # type: ignore[return-value]


def require_caller(
    *realms: SecurityRealm,
) -> Callable[[Request], Awaitable[CallerIdentity]]:
    """Build a dependency that authenticates the caller in one of ``realms``.

    Example:
        caller: Annotated[CallerIdentity, Depends(require_caller(OAUTH2, INTERNAL))]
    """

    async def dependency(request: Request) -> CallerIdentity:
        verifier: TokenVerifier = _get_state(  # type: ignore[assignment]
            request, "token_verifier"
        )
        token = extract_bearer_token(request.headers.get("authorization"))
        caller = await verifier.verify(token, realms)
        logger.debug(f"Authenticated caller in realm {caller.security_name.value}")
        return caller

    return dependency
