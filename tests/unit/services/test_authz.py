"""Tests for the fail-closed authorization webhook client."""

import httpx
import pytest

from attachment_service.config_models import AppConfig
from attachment_service.errors import ForbiddenError
from attachment_service.services.authz import AccessAuthorizer
from attachment_service.services.identity import InternalTokenProvider
from tests.mocks.fake_network import FakeNetwork, request_json
from tests.mocks.mock_identity_service import (
    INTERNAL_TOKEN,
    PEER_IDENTITY,
    MockIdentityService,
)

WEBHOOK = "http://authz.test/v1/data/attachment/allow"


def _authorizer(
    app_config: AppConfig, http_client: httpx.AsyncClient, webhook: str | None
) -> AccessAuthorizer:
    token_provider = InternalTokenProvider(
        http_client,
        app_config.idp.token_url(app_config.idp.internal_realm),
        app_config.idp.internal_client_id,
        app_config.idp.internal_client_secret,
    )
    return AccessAuthorizer(webhook, http_client, token_provider)


@pytest.mark.asyncio
async def test_unconfigured_webhook_denies(
    app_config: AppConfig, http_client: httpx.AsyncClient, fake_network: FakeNetwork
) -> None:
    authorizer = _authorizer(app_config, http_client, None)
    with pytest.raises(ForbiddenError) as exc_info:
        await authorizer.authorize("att-1", PEER_IDENTITY.address)
    assert exc_info.value.detail == "Forbidden"
    assert fake_network.requests == []


@pytest.mark.asyncio
async def test_allowed(
    app_config: AppConfig,
    http_client: httpx.AsyncClient,
    fake_network: FakeNetwork,
    identity_service: MockIdentityService,
) -> None:
    fake_network.add_json("POST", WEBHOOK, {"result": {"allow": True}})
    await _authorizer(app_config, http_client, WEBHOOK).authorize(
        "att-1", PEER_IDENTITY.address
    )

    request = fake_network.requests_to(WEBHOOK)[0]
    assert request.headers["authorization"] == f"bearer {INTERNAL_TOKEN}"
    assert request_json(request) == {
        "input": {
            "resourceType": "attachment",
            "resourceId": "att-1",
            "accountAddress": PEER_IDENTITY.address,
        }
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("body", "status_code"),
    [
        ({"result": {"allow": False}}, 200),
        ({"result": {"allow": "true"}}, 200),
        ({"result": {}}, 200),
        ({"allow": True}, 200),
        ({"result": {"allow": True}}, 500),
        ({"result": {"allow": True}}, 401),
    ],
)
async def test_denied(
    app_config: AppConfig,
    http_client: httpx.AsyncClient,
    fake_network: FakeNetwork,
    identity_service: MockIdentityService,
    body: object,
    status_code: int,
) -> None:
    fake_network.add_json("POST", WEBHOOK, body, status_code)
    with pytest.raises(ForbiddenError) as exc_info:
        await _authorizer(app_config, http_client, WEBHOOK).authorize(
            "att-1", PEER_IDENTITY.address
        )
    assert exc_info.value.status_code == 403
    assert exc_info.value.detail == "Forbidden"
