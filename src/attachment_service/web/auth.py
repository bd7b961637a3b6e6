"""Bearer-token authentication for the HTTP API.

Every API route names the security realms it accepts. A caller's token is
verified against the JWKS of each accepted realm in turn; the first realm
whose keys validate the token becomes the caller's ``security_name``.
"""

import asyncio
import logging
import time
from collections.abc import Sequence
from typing import Any, Protocol

import httpx
from authlib.jose import JsonWebKey, JsonWebToken, KeySet
from authlib.jose.errors import JoseError

from attachment_service.config_models import IdpConfig
from attachment_service.errors import UnauthorizedError
from attachment_service.services.attachments import CallerIdentity, SecurityRealm

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = ["RS256", "RS384", "RS512", "ES256", "ES384", "ES512"]


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the token of a ``Bearer`` Authorization header, if present."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class TokenVerifier(Protocol):
    """Turns a bearer token into an authenticated caller."""

    requires_token: bool

    async def verify(
        self, token: str | None, realms: Sequence[SecurityRealm]
    ) -> CallerIdentity:
        """Authenticate a caller against the accepted realms.

        Raises:
            UnauthorizedError: The token is missing or valid in none of the realms
        """
        ...


class DisabledAuthVerifier:
    """Treats every request as coming from a trusted internal service.

    Only for local development and tests; logged loudly at startup.
    """

    requires_token = False

    def __init__(self) -> None:
        logger.warning(
            "Authentication is DISABLED. All requests are treated as internal."
        )

    async def verify(
        self, token: str | None, realms: Sequence[SecurityRealm]
    ) -> CallerIdentity:
        return CallerIdentity(security_name=SecurityRealm.INTERNAL)


class JwksTokenVerifier:
    """Verifies signed JWTs with the identity provider's per-realm JWKS."""

    requires_token = True

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        idp: IdpConfig,
        cache_seconds: int = 300,
    ) -> None:
        self._client = http_client
        self._idp = idp
        self._cache_seconds = cache_seconds
        self._jwt = JsonWebToken(SUPPORTED_ALGORITHMS)
        self._key_sets: dict[SecurityRealm, tuple[KeySet, float]] = {}
        self._lock = asyncio.Lock()

    def realm_name(self, realm: SecurityRealm) -> str:
        return {
            SecurityRealm.OAUTH2: self._idp.oauth2_realm,
            SecurityRealm.INTERNAL: self._idp.internal_realm,
            SecurityRealm.EXTERNAL: self._idp.external_realm,
        }[realm]

    async def _get_key_set(self, realm: SecurityRealm) -> KeySet:
        async with self._lock:
            cached = self._key_sets.get(realm)
            if cached is not None and time.monotonic() < cached[1]:
                return cached[0]

            url = self._idp.jwks_url(self.realm_name(realm))
            logger.debug(f"Fetching JWKS for realm {realm.value} from {url}")
            response = await self._client.get(url)
            response.raise_for_status()
            key_set = JsonWebKey.import_key_set(response.json())
            self._key_sets[realm] = (key_set, time.monotonic() + self._cache_seconds)
            return key_set

    async def _verify_in_realm(
        self, token: str, realm: SecurityRealm
    ) -> dict[str, Any] | None:
        try:
            key_set = await self._get_key_set(realm)
        except (httpx.HTTPError, ValueError, JoseError) as e:
            logger.error(f"Unable to load signing keys for realm {realm.value}: {e}")
            return None

        try:
            claims = self._jwt.decode(token, key_set)
            claims.validate()
        except (JoseError, ValueError) as e:
            logger.debug(f"Token rejected by realm {realm.value}: {e}")
            return None
        return dict(claims)

    async def verify(
        self, token: str | None, realms: Sequence[SecurityRealm]
    ) -> CallerIdentity:
        if not token:
            raise UnauthorizedError("Missing bearer token")

        for realm in realms:
            claims = await self._verify_in_realm(token, realm)
            if claims is not None:
                return CallerIdentity(security_name=realm, claims=claims)

        raise UnauthorizedError(
            f"Token not valid for realms {[realm.value for realm in realms]}"
        )


def get_token_verifier(
    http_client: httpx.AsyncClient,
    idp: IdpConfig,
    enabled: bool = True,
    cache_seconds: int = 300,
) -> TokenVerifier:
    """Factory for the configured token verifier."""
    if not enabled:
        return DisabledAuthVerifier()
    logger.info("JWT bearer authentication is ENABLED.")
    return JwksTokenVerifier(http_client, idp, cache_seconds)
