"""
Request-level attachment operations.

This module provides the AttachmentService class that the HTTP layer calls to
list, create, fetch and delete attachments. It owns the rules about who may
see which record; fetching and verifying bytes is delegated to the
AttachmentResolver.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from attachment_service.errors import (
    AttachmentNotFoundError,
    BadRequestError,
    ForbiddenError,
    IdentityNotFoundError,
    UnknownError,
)
from attachment_service.hashing import HashEncoding, identify
from attachment_service.storage.attachments import AttachmentRecord
from attachment_service.storage.context import get_db_context

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from attachment_service.services.attachment_resolver import AttachmentResolver
    from attachment_service.services.authz import AccessAuthorizer
    from attachment_service.services.content_negotiation import NegotiatedAttachment
    from attachment_service.services.identity import Identity, IdentityClient
    from attachment_service.services.storage_backend import StorageBackend
    from attachment_service.storage.repositories import WhereClause

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


class SecurityRealm(str, enum.Enum):
    """Identity provider realm that issued the caller's token."""

    OAUTH2 = "oauth2"  # End users of this organisation
    INTERNAL = "internal"  # Other services of this organisation
    EXTERNAL = "external"  # Peer organisations


@dataclass(frozen=True)
class CallerIdentity:
    """An authenticated caller and the claims of its token."""

    security_name: SecurityRealm
    claims: dict[str, Any] = field(default_factory=dict)

    @property
    def is_external(self) -> bool:
        return self.security_name is SecurityRealm.EXTERNAL

    @property
    def is_internal(self) -> bool:
        return self.security_name is SecurityRealm.INTERNAL

    @property
    def organisation_chain_account(self) -> str | None:
        """The ``organisation.chainAccount`` claim of an external token."""
        organisation = self.claims.get("organisation")
        if not isinstance(organisation, dict):
            return None
        account = organisation.get("chainAccount")
        return account if isinstance(account, str) and account else None


class AttachmentView(BaseModel):
    """Attachment as returned to API clients, with the owner's alias."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    filename: str | None
    size: int | None
    integrity_hash: str
    owner: str
    created_at: datetime


class IdentityAliasCache:
    """Per-request memo of owner address <-> alias lookups.

    Keeps aliases consistent within one response and avoids repeating lookups
    for attachments sharing an owner. Never shared between requests.
    """

    def __init__(self, identity: IdentityClient) -> None:
        self._identity = identity
        self._known: dict[str, str] = {}

    def remember(self, identity: Identity) -> None:
        self._known[identity.alias] = identity.address
        self._known[identity.address] = identity.alias

    async def alias_for(self, address: str) -> str:
        """Return the alias for an owner address.

        Unknown addresses are logged and returned unchanged.

        Raises:
            UnknownError: The identity lookup failed for any other reason
        """
        alias = self._known.get(address)
        if alias is not None:
            return alias
        try:
            identity = await self._identity.get_member_by_address(address)
        except IdentityNotFoundError:
            logger.warning(f"Invalid owner detected in db: {address}")
            return address
        except Exception as e:
            raise UnknownError(f"Failed to resolve owner {address}: {e}") from e
        self.remember(identity)
        return identity.alias


class AttachmentService:
    """Attachment operations used by the HTTP API."""

    def __init__(
        self,
        db_engine: AsyncEngine,
        storage: StorageBackend,
        identity: IdentityClient,
        authorizer: AccessAuthorizer,
        resolver: AttachmentResolver,
    ) -> None:
        """
        Initialize the attachment service.

        Args:
            db_engine: Database engine; each operation runs in its own transaction
            storage: The configured storage backend
            identity: Identity directory client
            authorizer: Policy check for external callers
            resolver: Fetches and verifies attachment bytes
        """
        self.db_engine = db_engine
        self.storage = storage
        self.identity = identity
        self.authorizer = authorizer
        self.resolver = resolver

    async def find_attachment_record(
        self, id_or_hash: str, caller: CallerIdentity
    ) -> AttachmentRecord:
        """
        Look up a record by ID or integrity hash and check the caller may see it.

        External callers only ever get ForbiddenError, whether the record is
        missing, owned by a third party or denied by policy.

        Raises:
            AttachmentNotFoundError: No record matches (non-external callers)
            ForbiddenError: An external caller may not access the record
        """
        where = (
            {"id": id_or_hash}
            if UUID_PATTERN.match(id_or_hash)
            else {"integrity_hash": id_or_hash}
        )
        async with get_db_context(self.db_engine) as db:
            records = await db.attachments.get(where)

        if not records:
            if caller.is_external:
                raise ForbiddenError(
                    f"External request for unknown attachment {id_or_hash}"
                )
            raise AttachmentNotFoundError(f"Attachment {id_or_hash} not found")

        record = records[0]
        if not caller.is_external:
            return record

        self_identity = await self.identity.get_member_by_self()
        if record.owner != self_identity.address:
            raise ForbiddenError(
                f"External request for attachment {record.id} owned by {record.owner}"
            )

        chain_account = caller.organisation_chain_account
        if chain_account is None:
            raise ForbiddenError(
                "External token has no organisation.chainAccount claim"
            )

        await self.authorizer.authorize(record.id, chain_account)
        return record

    async def get_attachment(
        self, id_or_hash: str, caller: CallerIdentity, accept_header: str | None
    ) -> NegotiatedAttachment:
        """Fetch, verify and negotiate an attachment for the caller."""
        logger.debug(f"Attempting to retrieve attachment {id_or_hash}")
        record = await self.find_attachment_record(id_or_hash, caller)
        self_identity = await self.identity.get_member_by_self()
        return await self.resolver.resolve(record, self_identity, accept_header)

    async def list_attachments(
        self,
        updated_since: datetime | None = None,
        owner: str | None = None,
        integrity_hash: str | None = None,
        ids: list[str] | None = None,
    ) -> list[AttachmentView]:
        """
        List attachment records matching all given filters.

        Args:
            updated_since: Only records updated strictly after this time
            owner: Owner alias (or address) to filter by
            integrity_hash: Exact integrity hash
            ids: Attachment IDs

        Raises:
            BadRequestError: ``owner`` is not a known identity
        """
        aliases = IdentityAliasCache(self.identity)
        where: list[Any] = []
        if updated_since is not None:
            where.append(("updated_at", ">", updated_since))
        if integrity_hash:
            where.append(("integrity_hash", "=", integrity_hash))
        if ids:
            where.append(("id", "IN", ids))
        if owner:
            try:
                owner_identity = await self.identity.get_member_by_alias(owner)
            except IdentityNotFoundError as e:
                raise BadRequestError(
                    f"Invalid identity {owner}", detail=f"Invalid identity {owner}"
                ) from e
            aliases.remember(owner_identity)
            where.append(("owner", "=", owner_identity.address))

        logger.debug(
            f"Retrieving attachments with search: updated_since={updated_since} "
            f"owner={owner} integrity_hash={integrity_hash} ids={ids}"
        )
        filters: WhereClause = where
        async with get_db_context(self.db_engine) as db:
            records = await db.attachments.get(filters)
        return await self._transform_all(records, aliases)

    async def create_attachment(self, content: bytes, filename: str) -> AttachmentView:
        """
        Store content and record it as owned by this organisation.

        Args:
            content: The attachment bytes
            filename: Original filename, or ``json`` for JSON body uploads

        Raises:
            StorageUnavailableError: The storage backend failed
        """
        logger.debug(f"Creating an attachment with filename {filename}")
        stored, self_identity = await asyncio.gather(
            self.storage.store(content, filename),
            self.identity.get_member_by_self(),
        )
        aliases = IdentityAliasCache(self.identity)
        aliases.remember(self_identity)

        async with get_db_context(self.db_engine) as db:
            record = await db.attachments.insert({
                "filename": filename,
                "owner": self_identity.address,
                "integrity_hash": stored.integrity_hash,
                "size": len(content),
                "encoding": stored.encoding,
            })
        return await self._transform(record, aliases)

    async def create_internal_attachment(
        self, integrity_hash: str, owner_address: str
    ) -> AttachmentView:
        """
        Record an attachment stored elsewhere, on behalf of a trusted service.

        Filename and size stay unknown until the first retrieval backfills them.

        Raises:
            InvalidHashError: ``integrity_hash`` is not a supported hash
        """
        encoding = identify(integrity_hash)
        if encoding is HashEncoding.SHA256:
            # Bucket keys and peer lookups use the lower-case hex digest
            integrity_hash = integrity_hash.lower()
        logger.debug(
            f"Creating an internal attachment with hash {integrity_hash} "
            f"for owner {owner_address}"
        )
        async with get_db_context(self.db_engine) as db:
            record = await db.attachments.insert({
                "owner": owner_address,
                "integrity_hash": integrity_hash,
                "filename": None,
                "size": None,
                "encoding": encoding,
            })
        return await self._transform(record, IdentityAliasCache(self.identity))

    async def delete_attachment(self, attachment_id: str) -> None:
        """
        Hard-delete an attachment record. The stored bytes are left in place.

        Raises:
            AttachmentNotFoundError: No record has this ID
        """
        logger.debug(f"Deleting attachment {attachment_id}")
        async with get_db_context(self.db_engine) as db:
            if await db.attachments.get_by_id(attachment_id) is None:
                raise AttachmentNotFoundError(f"Attachment {attachment_id} not found")
            await db.attachments.delete({"id": attachment_id})
        logger.info(f"Deleted attachment {attachment_id}")

    async def _transform(
        self, record: AttachmentRecord, aliases: IdentityAliasCache
    ) -> AttachmentView:
        return AttachmentView(
            id=record.id,
            filename=record.filename,
            size=record.size,
            integrity_hash=record.integrity_hash,
            owner=await aliases.alias_for(record.owner),
            created_at=record.created_at,
        )

    async def _transform_all(
        self, records: list[AttachmentRecord], aliases: IdentityAliasCache
    ) -> list[AttachmentView]:
        return list(
            await asyncio.gather(
                *(self._transform(record, aliases) for record in records)
            )
        )
