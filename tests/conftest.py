import contextlib
import json
import logging
import os
import pathlib
import tempfile
from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from attachment_service.config_models import AppConfig
from attachment_service.services.backends.bucket import BucketStore
from attachment_service.storage import init_db
from attachment_service.storage.base import create_engine_with_sqlite_optimizations
from attachment_service.web.app_creator import AppServices, build_services
from tests.mocks.fake_network import FakeNetwork
from tests.mocks.mock_bucket_client import InMemoryBucketClient
from tests.mocks.mock_identity_service import (
    PEER_IDENTITY,
    SELF_IDENTITY,
    MockIdentityService,
)
from tests.mocks.mock_peer_organisation import MockPeerOrganisation
from tests.mocks.mock_token_verifier import StaticTokenVerifier

# Configure logging for tests (optional, but can be helpful)
logging.basicConfig(level=logging.INFO)

logger = logging.getLogger(__name__)


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Provide a temporary on-disk SQLite database with the schema created."""
    with tempfile.NamedTemporaryFile(
        prefix="as_test_", suffix=".sqlite", delete=False
    ) as tmp_file:
        tmp_name = tmp_file.name
    engine = create_engine_with_sqlite_optimizations(f"sqlite+aiosqlite:///{tmp_name}")
    logger.info(f"Created SQLite test engine: {engine.url}")
    try:
        await init_db(engine)
        yield engine
    finally:
        await engine.dispose()
        for suffix in ("", "-wal", "-shm"):
            with contextlib.suppress(FileNotFoundError):
                os.remove(f"{tmp_name}{suffix}")


@pytest.fixture
def credentials_file(tmp_path: pathlib.Path) -> pathlib.Path:
    """Credentials for the peer organisation, as issued by its IdP."""
    path = tmp_path / "credentials.json"
    path.write_text(
        json.dumps({
            "credentials": [
                MockPeerOrganisation.credentials_entry(PEER_IDENTITY.address)
            ]
        }),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def app_config(credentials_file: pathlib.Path) -> AppConfig:
    return AppConfig.model_validate({
        "credentials_file_path": str(credentials_file),
        "authz": {"webhook_url": "http://authz.test/v1/data/attachment/allow"},
        "idp": {"internal_client_secret": "internal-secret"},
    })


@pytest.fixture
def fake_network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def identity_service(
    fake_network: FakeNetwork, app_config: AppConfig
) -> MockIdentityService:
    service = MockIdentityService(fake_network, app_config, SELF_IDENTITY)
    service.add_member(PEER_IDENTITY)
    return service


@pytest_asyncio.fixture
async def http_client(
    fake_network: FakeNetwork,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    client = fake_network.client()
    try:
        yield client
    finally:
        await client.aclose()


@pytest.fixture
def peer_organisation(
    fake_network: FakeNetwork, identity_service: MockIdentityService
) -> MockPeerOrganisation:
    return MockPeerOrganisation(fake_network, identity_service, PEER_IDENTITY)


@pytest.fixture
def bucket_client() -> InMemoryBucketClient:
    return InMemoryBucketClient()


@pytest.fixture
def bucket_store(bucket_client: InMemoryBucketClient) -> BucketStore:
    return BucketStore(bucket_client, "attachments")


@pytest.fixture
def services(
    app_config: AppConfig,
    http_client: httpx.AsyncClient,
    db_engine: AsyncEngine,
    bucket_store: BucketStore,
    identity_service: MockIdentityService,
) -> AppServices:
    """The full service graph over in-memory storage and fake upstreams."""
    return build_services(
        app_config,
        http_client=http_client,
        database_engine=db_engine,
        storage_backend=bucket_store,
        token_verifier=StaticTokenVerifier(),
    )
