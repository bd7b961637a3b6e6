"""End-to-end tests of the HTTP API over in-memory storage and fake upstreams."""

import contextlib
import hashlib
from collections.abc import AsyncGenerator, AsyncIterator

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from attachment_service.config_models import AppConfig, AuthzConfig
from attachment_service.services.backends.ipfs import IpfsStore
from attachment_service.unixfs import wrapped_file_cid
from attachment_service.web.app_creator import AppServices, build_services, create_app
from tests.mocks.fake_network import FakeNetwork
from tests.mocks.mock_bucket_client import InMemoryBucketClient
from tests.mocks.mock_identity_service import PEER_IDENTITY, MockIdentityService
from tests.mocks.mock_ipfs_node import MockIpfsNode
from tests.mocks.mock_peer_organisation import MockPeerOrganisation
from tests.mocks.mock_token_verifier import (
    EXTERNAL_NO_ORG_TOKEN,
    EXTERNAL_TOKEN,
    INTERNAL_CALLER_TOKEN,
    USER_TOKEN,
    StaticTokenVerifier,
)

WEBHOOK = "http://authz.test/v1/data/attachment/allow"
OCTET = "application/octet-stream"
HELLO_SHA256 = hashlib.sha256(b"hello").hexdigest()


def auth(token: str, **headers: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}", **headers}


@contextlib.asynccontextmanager
async def api_client_for(services: AppServices) -> AsyncIterator[httpx.AsyncClient]:
    app = create_app(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://attachment-service.test"
    ) as client:
        yield client


@pytest_asyncio.fixture
async def api_client(services: AppServices) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with api_client_for(services) as client:
        yield client


async def upload_greeting(api_client: httpx.AsyncClient) -> dict:
    response = await api_client.post(
        "/v1/attachment",
        files={"file": ("greeting.txt", b"hello", "text/plain")},
        headers=auth(USER_TOKEN),
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestUploadAndDownload:
    @pytest.mark.asyncio
    async def test_upload_then_download_by_hash(
        self, api_client: httpx.AsyncClient
    ) -> None:
        created = await upload_greeting(api_client)

        assert created["integrityHash"] == HELLO_SHA256
        assert created["size"] == 5
        assert created["owner"] == "self-org"
        assert created["filename"] == "greeting.txt"
        assert "createdAt" in created

        response = await api_client.get(
            f"/v1/attachment/{HELLO_SHA256}", headers=auth(USER_TOKEN, Accept=OCTET)
        )
        assert response.status_code == 200
        assert response.content == b"hello"
        assert response.headers["content-type"] == OCTET
        assert (
            response.headers["content-disposition"]
            == 'attachment; filename="greeting.txt"'
        )
        assert "immutable" in response.headers["cache-control"]
        assert response.headers["access-control-expose-headers"] == (
            "content-disposition"
        )

    @pytest.mark.asyncio
    async def test_download_by_id(self, api_client: httpx.AsyncClient) -> None:
        created = await upload_greeting(api_client)
        response = await api_client.get(
            f"/v1/attachment/{created['id']}", headers=auth(INTERNAL_CALLER_TOKEN)
        )
        assert response.status_code == 200
        assert response.content == b"hello"

    @pytest.mark.asyncio
    async def test_json_upload_negotiation(self, api_client: httpx.AsyncClient) -> None:
        response = await api_client.post(
            "/v1/attachment",
            json={"greeting": "héllo", "n": [1, 2]},
            headers=auth(USER_TOKEN),
        )
        assert response.status_code == 201
        created = response.json()
        assert created["filename"] == "json"

        as_json = await api_client.get(
            f"/v1/attachment/{created['id']}",
            headers=auth(
                USER_TOKEN,
                Accept="application/octet-stream;q=0.5,application/json;q=0.9",
            ),
        )
        assert as_json.status_code == 200
        assert as_json.headers["content-type"] == "application/json"
        assert as_json.json() == {"greeting": "héllo", "n": [1, 2]}

        as_bytes = await api_client.get(
            f"/v1/attachment/{created['id']}", headers=auth(USER_TOKEN, Accept=OCTET)
        )
        assert as_bytes.content == '{"greeting":"héllo","n":[1,2]}'.encode()
        assert (
            as_bytes.headers["content-disposition"] == 'attachment; filename="json"'
        )

    @pytest.mark.asyncio
    async def test_empty_json_body(self, api_client: httpx.AsyncClient) -> None:
        response = await api_client.post(
            "/v1/attachment",
            content=b"",
            headers=auth(USER_TOKEN, **{"Content-Type": "application/json"}),
        )
        assert response.status_code == 400
        assert response.json() == {"detail": "nothing to upload"}

    @pytest.mark.asyncio
    async def test_upload_too_large(
        self, api_client: httpx.AsyncClient, app_config: AppConfig
    ) -> None:
        app_config.attachments.max_upload_size = 4
        response = await api_client.post(
            "/v1/attachment",
            files={"file": ("greeting.txt", b"hello", "text/plain")},
            headers=auth(USER_TOKEN),
        )
        assert response.status_code == 413

    @pytest.mark.asyncio
    async def test_tampered_content_is_not_returned(
        self, api_client: httpx.AsyncClient, bucket_client: InMemoryBucketClient
    ) -> None:
        await upload_greeting(api_client)
        _, metadata = bucket_client.buckets["attachments"][HELLO_SHA256]
        bucket_client.buckets["attachments"][HELLO_SHA256] = (b"jello", metadata)

        response = await api_client.get(
            f"/v1/attachment/{HELLO_SHA256}", headers=auth(USER_TOKEN, Accept=OCTET)
        )
        assert response.status_code == 400
        assert response.json() == {"detail": "Attachment failed integrity check"}
        assert b"jello" not in response.content


class TestListing:
    @pytest.mark.asyncio
    async def test_list_with_filters(self, api_client: httpx.AsyncClient) -> None:
        greeting = await upload_greeting(api_client)
        registered = (
            await api_client.post(
                "/v1/attachment",
                json={
                    "integrityHash": hashlib.sha256(b"theirs").hexdigest(),
                    "ownerAddress": PEER_IDENTITY.address,
                },
                headers=auth(INTERNAL_CALLER_TOKEN),
            )
        ).json()

        everything = await api_client.get("/v1/attachment", headers=auth(USER_TOKEN))
        assert {a["id"] for a in everything.json()} == {
            greeting["id"],
            registered["id"],
        }

        by_owner = await api_client.get(
            "/v1/attachment", params={"owner": "peer-org"}, headers=auth(USER_TOKEN)
        )
        assert [a["id"] for a in by_owner.json()] == [registered["id"]]

        by_ids = await api_client.get(
            "/v1/attachment",
            params=[("id", greeting["id"]), ("id", registered["id"])],
            headers=auth(USER_TOKEN),
        )
        assert len(by_ids.json()) == 2

        by_hash = await api_client.get(
            "/v1/attachment",
            params={"integrityHash": HELLO_SHA256},
            headers=auth(USER_TOKEN),
        )
        assert [a["id"] for a in by_hash.json()] == [greeting["id"]]

    @pytest.mark.asyncio
    async def test_list_unknown_owner(self, api_client: httpx.AsyncClient) -> None:
        response = await api_client.get(
            "/v1/attachment", params={"owner": "nobody"}, headers=auth(USER_TOKEN)
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_list_not_open_to_external_callers(
        self, api_client: httpx.AsyncClient
    ) -> None:
        response = await api_client.get("/v1/attachment", headers=auth(EXTERNAL_TOKEN))
        assert response.status_code == 401


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_token(self, api_client: httpx.AsyncClient) -> None:
        response = await api_client.get("/v1/attachment")
        assert response.status_code == 401
        assert response.json() == {"detail": "Unauthorized"}

    @pytest.mark.asyncio
    async def test_delete_requires_internal_caller(
        self, api_client: httpx.AsyncClient
    ) -> None:
        created = await upload_greeting(api_client)
        response = await api_client.delete(
            f"/v1/attachment/{created['id']}", headers=auth(USER_TOKEN)
        )
        assert response.status_code == 401


class TestInternalCallers:
    @pytest.mark.asyncio
    async def test_register_existing_hash(self, api_client: httpx.AsyncClient) -> None:
        response = await api_client.post(
            "/v1/attachment",
            json={
                "integrityHash": HELLO_SHA256,
                "ownerAddress": PEER_IDENTITY.address,
            },
            headers=auth(INTERNAL_CALLER_TOKEN),
        )
        assert response.status_code == 201
        body = response.json()
        assert body["owner"] == "peer-org"
        assert body["filename"] is None
        assert body["size"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("body", "detail"),
        [
            (
                {"integrityHash": HELLO_SHA256},
                "Invalid body for internal attachment creation",
            ),
            ({"integrityHash": "nope", "ownerAddress": "0x1"}, "Invalid hash nope"),
            (
                {
                    "integrityHash": (
                        "bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi"
                    ),
                    "ownerAddress": "0x1",
                },
                "Only CIDv0 content identifiers are supported",
            ),
        ],
    )
    async def test_register_rejects_bad_bodies(
        self, api_client: httpx.AsyncClient, body: dict, detail: str
    ) -> None:
        response = await api_client.post(
            "/v1/attachment", json=body, headers=auth(INTERNAL_CALLER_TOKEN)
        )
        assert response.status_code == 400
        assert response.json() == {"detail": detail}

    @pytest.mark.asyncio
    async def test_delete(self, api_client: httpx.AsyncClient) -> None:
        created = await upload_greeting(api_client)

        response = await api_client.delete(
            f"/v1/attachment/{created['id']}", headers=auth(INTERNAL_CALLER_TOKEN)
        )
        assert response.status_code == 204

        missing = await api_client.get(
            f"/v1/attachment/{created['id']}", headers=auth(USER_TOKEN)
        )
        assert missing.status_code == 404
        again = await api_client.delete(
            f"/v1/attachment/{created['id']}", headers=auth(INTERNAL_CALLER_TOKEN)
        )
        assert again.status_code == 404


class TestExternalCallers:
    @pytest.mark.asyncio
    async def test_allowed_by_policy(
        self, api_client: httpx.AsyncClient, fake_network: FakeNetwork
    ) -> None:
        fake_network.add_json("POST", WEBHOOK, {"result": {"allow": True}})
        await upload_greeting(api_client)

        response = await api_client.get(
            f"/v1/attachment/{HELLO_SHA256}", headers=auth(EXTERNAL_TOKEN, Accept=OCTET)
        )
        assert response.status_code == 200
        assert response.content == b"hello"

    @pytest.mark.asyncio
    async def test_without_webhook_everything_is_forbidden(
        self,
        app_config: AppConfig,
        http_client: httpx.AsyncClient,
        db_engine: AsyncEngine,
        services: AppServices,
        identity_service: MockIdentityService,
    ) -> None:
        unguarded = build_services(
            app_config.model_copy(update={"authz": AuthzConfig()}),
            http_client=http_client,
            database_engine=db_engine,
            storage_backend=services.storage_backend,
            token_verifier=StaticTokenVerifier(),
        )
        async with api_client_for(unguarded) as client:
            created = await upload_greeting(client)
            peer_owned = (
                await client.post(
                    "/v1/attachment",
                    json={
                        "integrityHash": hashlib.sha256(b"a").hexdigest(),
                        "ownerAddress": PEER_IDENTITY.address,
                    },
                    headers=auth(INTERNAL_CALLER_TOKEN),
                )
            ).json()

            responses = [
                await client.get(f"/v1/attachment/{target}", headers=auth(token))
                for target, token in [
                    (created["id"], EXTERNAL_TOKEN),
                    (peer_owned["id"], EXTERNAL_TOKEN),
                    ("00000000-0000-0000-0000-000000000000", EXTERNAL_TOKEN),
                    (created["id"], EXTERNAL_NO_ORG_TOKEN),
                ]
            ]

        for response in responses:
            assert response.status_code == 403
            assert response.json() == {"detail": "Forbidden"}

    @pytest.mark.asyncio
    async def test_unknown_record_is_not_found_for_own_users(
        self, api_client: httpx.AsyncClient
    ) -> None:
        response = await api_client.get(
            "/v1/attachment/00000000-0000-0000-0000-000000000000",
            headers=auth(USER_TOKEN),
        )
        assert response.status_code == 404
        assert response.json() == {"detail": "Attachment not found"}


class TestPeerFederation:
    @pytest.mark.asyncio
    async def test_peer_owned_attachment_is_fetched_from_peer(
        self,
        api_client: httpx.AsyncClient,
        peer_organisation: MockPeerOrganisation,
    ) -> None:
        digest = hashlib.sha256(b"peer data").hexdigest()
        peer_organisation.serve(digest, b"peer data", "report.pdf")
        await api_client.post(
            "/v1/attachment",
            json={"integrityHash": digest, "ownerAddress": PEER_IDENTITY.address},
            headers=auth(INTERNAL_CALLER_TOKEN),
        )

        response = await api_client.get(
            f"/v1/attachment/{digest}", headers=auth(USER_TOKEN, Accept=OCTET)
        )
        assert response.status_code == 200
        assert response.content == b"peer data"
        assert (
            response.headers["content-disposition"]
            == 'attachment; filename="report.pdf"'
        )

        listed = await api_client.get(
            "/v1/attachment", params={"integrityHash": digest}, headers=auth(USER_TOKEN)
        )
        assert listed.json()[0]["filename"] == "report.pdf"
        assert listed.json()[0]["size"] == len(b"peer data")

    @pytest.mark.asyncio
    async def test_peer_failure_is_an_upstream_error(
        self,
        api_client: httpx.AsyncClient,
        peer_organisation: MockPeerOrganisation,
    ) -> None:
        digest = hashlib.sha256(b"never served").hexdigest()
        await api_client.post(
            "/v1/attachment",
            json={"integrityHash": digest, "ownerAddress": PEER_IDENTITY.address},
            headers=auth(INTERNAL_CALLER_TOKEN),
        )

        response = await api_client.get(
            f"/v1/attachment/{digest}", headers=auth(USER_TOKEN)
        )
        assert response.status_code == 502
        assert response.json() == {"detail": "Failed to fetch attachment"}


class TestIpfsBackedService:
    @pytest.mark.asyncio
    async def test_upload_and_download(
        self,
        app_config: AppConfig,
        http_client: httpx.AsyncClient,
        db_engine: AsyncEngine,
        fake_network: FakeNetwork,
        identity_service: MockIdentityService,
    ) -> None:
        api_url = app_config.storage.ipfs_api_url
        MockIpfsNode(fake_network, api_url)
        ipfs_services = build_services(
            app_config,
            http_client=http_client,
            database_engine=db_engine,
            storage_backend=IpfsStore(api_url, http_client),
            token_verifier=StaticTokenVerifier(),
        )

        async with api_client_for(ipfs_services) as client:
            created = await upload_greeting(client)
            assert created["integrityHash"] == wrapped_file_cid(
                b"hello", "greeting.txt"
            )

            response = await client.get(
                f"/v1/attachment/{created['integrityHash']}",
                headers=auth(USER_TOKEN, Accept=OCTET),
            )
        assert response.status_code == 200
        assert response.content == b"hello"
        assert (
            response.headers["content-disposition"]
            == 'attachment; filename="greeting.txt"'
        )


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, api_client: httpx.AsyncClient) -> None:
        response = await api_client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["details"]["storage"]["status"] == "up"
        assert body["details"]["identity"] == {
            "status": "up",
            "detail": {"version": "1.4.2"},
        }

    @pytest.mark.asyncio
    async def test_identity_down(
        self,
        api_client: httpx.AsyncClient,
        identity_service: MockIdentityService,
    ) -> None:
        identity_service.healthy = False
        response = await api_client.get("/health")
        assert response.status_code == 503
        assert response.json()["status"] == "down"

    @pytest.mark.asyncio
    async def test_storage_down(
        self, api_client: httpx.AsyncClient, bucket_client: InMemoryBucketClient
    ) -> None:
        bucket_client.available = False
        response = await api_client.get("/health")
        assert response.status_code == 503
        assert response.json()["details"]["storage"]["status"] == "down"
