import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from attachment_service import __version__
from attachment_service.config_loader import DEFAULT_CONFIG_FILE, load_config
from attachment_service.config_models import AppConfig
from attachment_service.errors import AttachmentServiceError
from attachment_service.logging_config import configure_logging
from attachment_service.services.attachment_resolver import AttachmentResolver
from attachment_service.services.attachments import AttachmentService
from attachment_service.services.authz import AccessAuthorizer
from attachment_service.services.credentials import CredentialDirectory
from attachment_service.services.identity import IdentityClient, InternalTokenProvider
from attachment_service.services.peer_federation import PeerFederationClient
from attachment_service.services.storage_backend import (
    StorageBackend,
    get_storage_backend,
)
from attachment_service.storage import (
    create_engine_with_sqlite_optimizations,
    init_db,
)
from attachment_service.web.auth import TokenVerifier, get_token_verifier
from attachment_service.web.routers.attachments_api import attachments_api_router
from attachment_service.web.routers.health import health_router

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    """Everything the HTTP layer needs, wired once per process."""

    config: AppConfig
    database_engine: AsyncEngine
    http_client: httpx.AsyncClient
    storage_backend: StorageBackend
    identity_client: IdentityClient
    token_verifier: TokenVerifier
    attachment_service: AttachmentService


def build_services(
    config: AppConfig,
    http_client: httpx.AsyncClient | None = None,
    database_engine: AsyncEngine | None = None,
    storage_backend: StorageBackend | None = None,
    token_verifier: TokenVerifier | None = None,
) -> AppServices:
    """
    Construct the service graph from configuration.

    Any of the shared resources can be supplied by the caller (tests pass a
    mock-transport client, a temporary database or an in-memory store);
    the rest are built from ``config``.
    """
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=config.http_timeout_seconds)
    if database_engine is None:
        database_engine = create_engine_with_sqlite_optimizations(config.database_url)
    if storage_backend is None:
        storage_backend = get_storage_backend(config.storage, http_client)
    if token_verifier is None:
        token_verifier = get_token_verifier(
            http_client,
            config.idp,
            enabled=config.auth.enabled,
            cache_seconds=config.auth.jwks_cache_seconds,
        )

    token_provider = InternalTokenProvider(
        http_client,
        token_url=config.idp.token_url(config.idp.internal_realm),
        client_id=config.idp.internal_client_id,
        client_secret=config.idp.internal_client_secret,
    )
    identity_client = IdentityClient(
        config.identity.base_url, http_client, token_provider
    )
    credentials = CredentialDirectory(config.credentials_file_path)
    peers = PeerFederationClient(http_client, identity_client, credentials)
    authorizer = AccessAuthorizer(config.authz.webhook_url, http_client, token_provider)
    resolver = AttachmentResolver(database_engine, storage_backend, peers)
    attachment_service = AttachmentService(
        db_engine=database_engine,
        storage=storage_backend,
        identity=identity_client,
        authorizer=authorizer,
        resolver=resolver,
    )
    logger.info(f"Services built with storage mode {config.storage.mode.value}")
    return AppServices(
        config=config,
        database_engine=database_engine,
        http_client=http_client,
        storage_backend=storage_backend,
        identity_client=identity_client,
        token_verifier=token_verifier,
        attachment_service=attachment_service,
    )


async def handle_attachment_service_error(
    request: Request, exc: AttachmentServiceError
) -> JSONResponse:
    """Map AttachmentServiceError subclasses to their HTTP status."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(
            f"{request.method} {request.url.path} -> {exc.status_code}: {exc}"
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def create_app(services: AppServices) -> FastAPI:
    """Create the FastAPI application around a built service graph."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await init_db(services.database_engine)
        logger.info("Attachment service started.")
        try:
            yield
        finally:
            await services.http_client.aclose()
            await services.database_engine.dispose()
            logger.info("Attachment service stopped.")

    app = FastAPI(
        title="Attachment Service",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    # --- Store shared objects on app.state ---
    app.state.config = services.config
    app.state.database_engine = services.database_engine
    app.state.storage_backend = services.storage_backend
    app.state.identity_client = services.identity_client
    app.state.token_verifier = services.token_verifier
    app.state.attachment_service = services.attachment_service

    app.add_exception_handler(
        AttachmentServiceError,
        handle_attachment_service_error,  # type: ignore[arg-type]
    )

    # --- Include Routers ---
    app.include_router(health_router, tags=["Health Check"])
    app.include_router(
        attachments_api_router, prefix="/v1/attachment", tags=["Attachments"]
    )
    return app


def create_app_from_config(config_file_path: str = DEFAULT_CONFIG_FILE) -> FastAPI:
    """Load configuration, set up logging and build the application.

    Suitable as an ASGI factory, e.g.
    ``uvicorn --factory attachment_service.web.app_creator:create_app_from_config``.
    """
    config = load_config(config_file_path)
    configure_logging(config.logging.level)
    return create_app(build_services(config))
