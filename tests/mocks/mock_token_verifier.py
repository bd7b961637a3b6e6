"""Token verifier that maps fixed bearer tokens to callers."""

from collections.abc import Sequence

from attachment_service.errors import UnauthorizedError
from attachment_service.services.attachments import CallerIdentity, SecurityRealm

USER_TOKEN = "user-token"
INTERNAL_CALLER_TOKEN = "internal-caller-token"
EXTERNAL_TOKEN = "external-token"
EXTERNAL_NO_ORG_TOKEN = "external-no-org-token"

PEER_CHAIN_ACCOUNT = "0xB0B0000000000000000000000000000000000000"


class StaticTokenVerifier:
    requires_token = True

    def __init__(self, callers: dict[str, CallerIdentity] | None = None) -> None:
        self.callers = callers or {
            USER_TOKEN: CallerIdentity(SecurityRealm.OAUTH2, {"sub": "user-1"}),
            INTERNAL_CALLER_TOKEN: CallerIdentity(SecurityRealm.INTERNAL),
            EXTERNAL_TOKEN: CallerIdentity(
                SecurityRealm.EXTERNAL,
                {"organisation": {"chainAccount": PEER_CHAIN_ACCOUNT}},
            ),
            EXTERNAL_NO_ORG_TOKEN: CallerIdentity(SecurityRealm.EXTERNAL, {}),
        }

    async def verify(
        self, token: str | None, realms: Sequence[SecurityRealm]
    ) -> CallerIdentity:
        caller = self.callers.get(token or "")
        if caller is None or caller.security_name not in realms:
            raise UnauthorizedError(f"Token {token!r} not accepted for {realms}")
        return caller
