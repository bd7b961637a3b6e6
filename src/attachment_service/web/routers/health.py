import asyncio
import logging

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from attachment_service import __version__
from attachment_service.services.storage_backend import ServiceState

logger = logging.getLogger(__name__)
health_router = APIRouter()


@health_router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(request: Request) -> JSONResponse:
    """Checks the storage backend and the identity service."""
    storage = getattr(request.app.state, "storage_backend", None)
    identity = getattr(request.app.state, "identity_client", None)

    if storage is None or identity is None:
        return JSONResponse(
            content={"status": "down", "reason": "Services not initialized"},
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    storage_status, identity_status = await asyncio.gather(
        storage.get_status(), identity.get_status()
    )
    details = {
        "storage": {
            "status": storage_status.status.value,
            "detail": storage_status.detail,
        },
        "identity": {
            "status": identity_status.status.value,
            "detail": identity_status.detail,
        },
    }

    if ServiceState.DOWN in (storage_status.status, identity_status.status):
        logger.warning(f"Health check failing: {details}")
        return JSONResponse(
            content={"status": "down", "version": __version__, "details": details},
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return JSONResponse(
        content={"status": "ok", "version": __version__, "details": details},
        status_code=status.HTTP_200_OK,
    )
