"""Fetching attachments owned by other organisations from their own services.

Each organisation runs its own attachment service. When a record is owned by
another organisation the bytes are fetched from that organisation's service,
authenticating with client credentials issued by the peer's identity
provider:

1. Look up the peer's published endpoints in the identity directory.
2. Fetch the peer's OIDC discovery document to find its token endpoint.
3. Exchange our client credentials for that peer for an access token.
4. GET ``{attachmentEndpointAddress}/attachment/{integrityHash}``.

Every step is attempted exactly once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from email.message import Message
from email.utils import collapse_rfc2231_value

import httpx
from pydantic import AnyHttpUrl, BaseModel, ValidationError

from attachment_service.errors import (
    OidcDiscoveryFailedError,
    PeerFetchFailedError,
    TokenExchangeFailedError,
)
from attachment_service.services.credentials import CredentialDirectory
from attachment_service.services.identity import IdentityClient
from attachment_service.storage.attachments import AttachmentRecord

logger = logging.getLogger(__name__)


class OidcConfiguration(BaseModel):
    token_endpoint: AnyHttpUrl


class AccessTokenResponse(BaseModel):
    access_token: str


@dataclass(frozen=True)
class PeerAttachment:
    """Bytes returned by a peer plus the filename from its Content-Disposition."""

    content: bytes
    filename: str | None = None


def filename_from_content_disposition(header: str | None) -> str | None:
    """Extract the filename parameter of a Content-Disposition header.

    Handles quoted values and RFC 2231 ``filename*`` encodings, preferring
    ``filename*`` when both are present.
    """
    if not header:
        return None
    message = Message()
    message["Content-Disposition"] = header
    params = message.get_params(header="content-disposition") or []
    filename = None
    # Extended parameters are listed after plain ones, so filename* wins
    for name, value in params[1:]:
        if name.lower() == "filename":
            filename = collapse_rfc2231_value(value).strip() or None
    return filename


class PeerFederationClient:
    """Retrieves attachment bytes from the owning organisation's service."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        identity: IdentityClient,
        credentials: CredentialDirectory,
    ) -> None:
        self._client = http_client
        self._identity = identity
        self._credentials = credentials

    async def get_oidc_configuration(self, url: str) -> OidcConfiguration:
        response = await self._client.get(url)
        if not response.is_success:
            raise OidcDiscoveryFailedError(
                f"OIDC discovery at {url} returned {response.status_code}"
            )
        try:
            return OidcConfiguration.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise OidcDiscoveryFailedError(
                f"Invalid OIDC discovery document at {url}: {e}"
            ) from e

    async def get_access_token(
        self, token_url: str, client_id: str, client_secret: str
    ) -> str:
        response = await self._client.post(
            token_url,
            data={
                "grant_type": "client_credentials",
                "client_id": client_id,
                "client_secret": client_secret,
            },
        )
        if not response.is_success:
            raise TokenExchangeFailedError(
                f"Token endpoint {token_url} returned {response.status_code}"
            )
        try:
            return AccessTokenResponse.model_validate(response.json()).access_token
        except (ValueError, ValidationError) as e:
            raise TokenExchangeFailedError(
                f"Invalid token response from {token_url}: {e}"
            ) from e

    async def fetch_attachment(self, url: str, access_token: str) -> PeerAttachment:
        try:
            response = await self._client.get(
                url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/octet-stream",
                },
            )
        except httpx.HTTPError as e:
            logger.error(f"Error fetching attachment from {url}: {e}")
            raise

        if not response.is_success:
            raise PeerFetchFailedError(
                f"Peer returned {response.status_code} for {url}"
            )
        filename = filename_from_content_disposition(
            response.headers.get("content-disposition")
        )
        return PeerAttachment(content=response.content, filename=filename)

    async def get_attachment_from_peer(
        self, record: AttachmentRecord
    ) -> PeerAttachment:
        """Fetch a record's bytes from the organisation that owns it.

        Raises:
            IdentityNotFoundError: The owner is unknown to the identity directory
            OidcDiscoveryFailedError: The peer's discovery document is unusable
            NoCredentialsError: No credentials are configured for the owner
            TokenExchangeFailedError: The peer's token endpoint refused the grant
            PeerFetchFailedError: The peer refused to return the attachment
            httpx.HTTPError: Transport failure talking to the peer
        """
        profile = await self._identity.get_organisation_data_by_address(record.owner)
        oidc_config = await self.get_oidc_configuration(
            profile.oidc_configuration_endpoint_address
        )
        credential = self._credentials.get_credentials_for_owner(record.owner)
        access_token = await self.get_access_token(
            str(oidc_config.token_endpoint),
            credential.client_id,
            credential.client_secret,
        )
        logger.info(
            f"Fetching attachment {record.id} from peer {profile.account}"
        )
        return await self.fetch_attachment(
            f"{profile.attachment_endpoint_address.rstrip('/')}"
            f"/attachment/{record.integrity_hash}",
            access_token,
        )
