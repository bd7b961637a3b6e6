"""Fake identity directory and identity provider token endpoint."""

import httpx

from attachment_service.config_models import AppConfig
from attachment_service.services.identity import Identity, PeerOrgProfile
from tests.mocks.fake_network import FakeNetwork, json_response

INTERNAL_TOKEN = "internal-service-token"

SELF_IDENTITY = Identity(
    address="0xA11CE00000000000000000000000000000000000", alias="self-org"
)
PEER_IDENTITY = Identity(
    address="0xB0B0000000000000000000000000000000000000", alias="peer-org"
)


class MockIdentityService:
    """Serves /v1/self, /v1/members and org-data for a fixed set of members.

    Only requests carrying the internal service token are answered.
    """

    def __init__(
        self, network: FakeNetwork, config: AppConfig, self_identity: Identity
    ) -> None:
        self.network = network
        self.base_url = config.identity.base_url
        self.self_identity = self_identity
        self.members: dict[str, Identity] = {}
        self.healthy = True

        network.add_json(
            "POST",
            config.idp.token_url(config.idp.internal_realm),
            {"access_token": INTERNAL_TOKEN, "expires_in": 300},
        )
        network.add("GET", f"{self.base_url}/v1/self", self._self)
        network.add("GET", f"{self.base_url}/health", self._health)
        self.add_member(self_identity)

    def _authorised(self, request: httpx.Request) -> bool:
        return request.headers.get("authorization") == f"bearer {INTERNAL_TOKEN}"

    def _self(self, request: httpx.Request) -> httpx.Response:
        if not self._authorised(request):
            return httpx.Response(401)
        return httpx.Response(200, json=self.self_identity.model_dump())

    def _health(self, request: httpx.Request) -> httpx.Response:
        if not self.healthy:
            return httpx.Response(503, json={"status": "down", "version": "1.0.0"})
        return httpx.Response(200, json={"status": "ok", "version": "1.4.2"})

    def add_member(self, identity: Identity) -> None:
        self.members[identity.alias] = identity
        self.members[identity.address] = identity
        for key in (identity.alias, identity.address):
            self.network.add(
                "GET", f"{self.base_url}/v1/members/{key}", self._member(identity)
            )

    def _member(self, identity: Identity):  # noqa: ANN202
        def handler(request: httpx.Request) -> httpx.Response:
            if not self._authorised(request):
                return httpx.Response(401)
            return httpx.Response(200, json=identity.model_dump())

        return handler

    def add_org_data(self, profile: PeerOrgProfile) -> None:
        self.network.add(
            "GET",
            f"{self.base_url}/v1/members/{profile.account}/org-data",
            json_response(profile.model_dump(by_alias=True)),
        )
