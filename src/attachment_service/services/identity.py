"""Client for the identity directory service.

The identity directory maps organisation account addresses to human-readable
aliases and publishes each organisation's federation endpoints. Every call
except the health check carries an internal service token obtained with the
client-credentials grant against the internal realm of the identity provider.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from attachment_service.errors import (
    IdentityNotFoundError,
    IdentityServiceError,
    TokenExchangeFailedError,
)
from attachment_service.services.storage_backend import ServiceState, ServiceStatus

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

VERSION_PATTERN = re.compile(r"\d+\.\d+\.\d+")
# Refresh the internal token this many seconds before it expires
TOKEN_EXPIRY_MARGIN_SECONDS = 30.0
DEFAULT_TOKEN_LIFETIME_SECONDS = 60.0


class Identity(BaseModel):
    """An organisation known to the identity directory."""

    address: str
    alias: str


class PeerOrgProfile(BaseModel):
    """Federation endpoints published by an organisation."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    account: str
    attachment_endpoint_address: str
    oidc_configuration_endpoint_address: str


class IdentityHealth(BaseModel):
    version: str
    status: str


class InternalTokenProvider:
    """Obtains and caches the service's own access token for internal calls."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_url: str,
        client_id: str,
        client_secret: str,
    ) -> None:
        self._client = http_client
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    async def get_token(self) -> str:
        """Return a valid internal access token, fetching a new one if needed.

        Raises:
            TokenExchangeFailedError: The identity provider rejected the grant
        """
        async with self._lock:
            if self._token is not None and time.monotonic() < self._expires_at:
                return self._token

            response = await self._client.post(
                self._token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
            )
            if not response.is_success:
                raise TokenExchangeFailedError(
                    f"Internal token request failed with status {response.status_code}"
                )
            try:
                body = response.json()
                token = body["access_token"]
                lifetime = float(body.get("expires_in", DEFAULT_TOKEN_LIFETIME_SECONDS))
            except (ValueError, KeyError, TypeError) as e:
                raise TokenExchangeFailedError(
                    f"Malformed internal token response: {e}"
                ) from e

            self._token = token
            self._expires_at = (
                time.monotonic() + max(lifetime - TOKEN_EXPIRY_MARGIN_SECONDS, 0.0)
            )
            logger.debug("Obtained new internal access token")
            return token


class IdentityClient:
    """Async client for the identity directory HTTP API."""

    def __init__(
        self,
        base_url: str,
        http_client: httpx.AsyncClient,
        token_provider: InternalTokenProvider,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = http_client
        self._token_provider = token_provider

    async def _get(self, path: str, model: type[ModelT], not_found: str) -> ModelT:
        token = await self._token_provider.get_token()
        response = await self._client.get(
            f"{self._base_url}{path}",
            headers={"Authorization": f"bearer {token}"},
        )
        if response.status_code == 404:
            raise IdentityNotFoundError(f"identity: {not_found}")
        if not response.is_success:
            raise IdentityServiceError(
                f"Identity service returned {response.status_code} for {path}"
            )
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise IdentityServiceError(
                f"Unexpected identity service response for {path}: {e}"
            ) from e

    async def get_member_by_self(self) -> Identity:
        """Get this service's own organisation."""
        return await self._get("/v1/self", Identity, "self")

    async def get_member_by_alias(self, alias: str) -> Identity:
        """Resolve an alias (or address) to an identity.

        Raises:
            IdentityNotFoundError: The directory does not know ``alias``
            IdentityServiceError: The directory failed or answered malformed data
        """
        return await self._get(
            f"/v1/members/{quote(alias, safe='')}", Identity, alias
        )

    async def get_member_by_address(self, address: str) -> Identity:
        """Resolve an account address to an identity (same endpoint as aliases)."""
        return await self.get_member_by_alias(address)

    async def get_organisation_data_by_address(self, address: str) -> PeerOrgProfile:
        """Fetch an organisation's federation endpoints. Never cached."""
        return await self._get(
            f"/v1/members/{quote(address, safe='')}/org-data",
            PeerOrgProfile,
            address,
        )

    async def get_status(self) -> ServiceStatus:
        """Report identity service health. Never raises."""
        down = ServiceStatus(
            ServiceState.DOWN,
            {"message": "Error getting status from Identity service"},
        )
        try:
            response = await self._client.get(f"{self._base_url}/health")
            if not response.is_success:
                return down
            health = IdentityHealth.model_validate(response.json())
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            logger.debug(f"Identity service status error: {e}")
            return down

        if health.status != "ok" or not VERSION_PATTERN.search(health.version):
            return down
        return ServiceStatus(ServiceState.UP, {"version": health.version})
