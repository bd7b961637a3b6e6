"""Authorization of external organisations' access to attachments.

Access decisions are delegated to a policy webhook. The service fails closed:
without a webhook, or on any unexpected webhook response, access is denied.
Callers only ever see ``ForbiddenError``; the reason is logged, never returned.
"""

from __future__ import annotations

import logging

import httpx
from pydantic import BaseModel, StrictBool, ValidationError

from attachment_service.errors import ForbiddenError
from attachment_service.services.identity import InternalTokenProvider

logger = logging.getLogger(__name__)


class _AuthzResult(BaseModel):
    allow: StrictBool


class _AuthzResponse(BaseModel):
    result: _AuthzResult


class AccessAuthorizer:
    """Asks the authorization webhook whether an account may read an attachment."""

    def __init__(
        self,
        webhook_url: str | None,
        http_client: httpx.AsyncClient,
        token_provider: InternalTokenProvider,
    ) -> None:
        self._webhook_url = webhook_url or None
        self._client = http_client
        self._token_provider = token_provider
        if self._webhook_url is None:
            logger.warning(
                "Authorization webhook is not configured. "
                "External access to attachments will always fail"
            )

    async def authorize(self, attachment_id: str, account_address: str) -> None:
        """Check access and return normally only when it is allowed.

        Args:
            attachment_id: ID of the attachment being requested
            account_address: Chain account of the requesting organisation

        Raises:
            ForbiddenError: Access is denied, or could not be confirmed
        """
        logger.debug(
            f"Attempting to authorize access for address {account_address} "
            f"to attachment {attachment_id}"
        )
        if self._webhook_url is None:
            raise ForbiddenError("Authorization webhook not configured")

        token = await self._token_provider.get_token()
        response = await self._client.post(
            self._webhook_url,
            json={
                "input": {
                    "resourceType": "attachment",
                    "resourceId": attachment_id,
                    "accountAddress": account_address,
                }
            },
            headers={"Authorization": f"bearer {token}"},
        )

        if not response.is_success:
            if response.is_server_error:
                logger.error(
                    f"Internal error authorizing account {account_address} "
                    f"to access attachment {attachment_id}: {response.status_code}"
                )
            raise ForbiddenError(
                f"Authorization webhook returned {response.status_code}"
            )

        try:
            decision = _AuthzResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error("Authorization response did not match expected format")
            raise ForbiddenError(f"Malformed authorization response: {e}") from e

        if not decision.result.allow:
            logger.debug(
                f"Access by {account_address} to attachment {attachment_id} "
                "was disallowed by policy"
            )
            raise ForbiddenError("Disallowed by policy")
