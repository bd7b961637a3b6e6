"""Resolution of an attachment record to verified bytes and a response form.

The resolver decides where a record's bytes live, fetches them, checks them
against the record's integrity hash, lazily fills in metadata the record is
missing, and picks the representation to return:

1. Records owned by another organisation are fetched from that organisation
   through peer federation; our own records come from the storage backend.
2. The bytes are rehashed with the scheme the record's hash uses. A mismatch
   fails the request and the bytes are discarded.
3. Missing ``filename``/``size``/``encoding`` columns are backfilled in their
   own short transaction. Failures there are logged and ignored.
4. Content negotiation chooses JSON or octet-stream.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from attachment_service.errors import IntegrityCheckFailedError, UnknownFilenameError
from attachment_service.hashing import (
    HashEncoding,
    compute_integrity_hash,
    hashes_match,
    identify,
)
from attachment_service.services.content_negotiation import (
    NegotiatedAttachment,
    negotiate,
)
from attachment_service.storage.context import get_db_context
from attachment_service.unixfs import file_cid

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from attachment_service.services.identity import Identity
    from attachment_service.services.peer_federation import PeerFederationClient
    from attachment_service.services.storage_backend import StorageBackend
    from attachment_service.storage.attachments import AttachmentRecord

logger = logging.getLogger(__name__)

# Download name for peer attachments whose filename nobody recorded
EXTERNAL_FILENAME = "external"


class AttachmentResolver:
    """Fetches, verifies and negotiates a single attachment."""

    def __init__(
        self,
        engine: AsyncEngine,
        storage: StorageBackend,
        peers: PeerFederationClient,
    ) -> None:
        self._engine = engine
        self._storage = storage
        self._peers = peers

    async def resolve(
        self,
        record: AttachmentRecord,
        self_identity: Identity,
        accept_header: str | None,
    ) -> NegotiatedAttachment:
        """Resolve a record to the response the caller should receive.

        Args:
            record: The attachment's metadata row
            self_identity: This service's own organisation
            accept_header: The request's Accept header

        Returns:
            The negotiated JSON or octet-stream representation

        Raises:
            IntegrityCheckFailedError: The bytes do not match the integrity hash
            UnknownFilenameError: A CIDv0 record has no filename to verify with
            AttachmentNotFoundError: Storage has no bytes for the record
            StorageUnavailableError: The storage backend failed
            UpstreamServiceError: A peer federation step failed
        """
        encoding = record.encoding or identify(record.integrity_hash)
        is_local = record.owner == self_identity.address

        if is_local:
            retrieved = await self._storage.retrieve(record.integrity_hash)
            content, observed_filename = retrieved.content, retrieved.filename
        else:
            logger.debug(
                f"Attachment {record.id} is owned by {record.owner}; fetching from peer"
            )
            peer_attachment = await self._peers.get_attachment_from_peer(record)
            content, observed_filename = (
                peer_attachment.content,
                peer_attachment.filename,
            )

        filename = self._resolve_filename(record, encoding, observed_filename, is_local)
        await self._verify(record, encoding, content, filename, is_local)
        await self._backfill(record, encoding, content, observed_filename)
        return negotiate(content, filename, accept_header)

    def _is_bucket_cid(self, encoding: HashEncoding, is_local: bool) -> bool:
        # Bucket objects keyed by a CIDv0 predate SHA-256 keys and hash a bare
        # UnixFS file node with no directory wrapper
        return (
            is_local
            and encoding is HashEncoding.CIDV0
            and self._storage.encoding is HashEncoding.SHA256
        )

    def _resolve_filename(
        self,
        record: AttachmentRecord,
        encoding: HashEncoding,
        observed_filename: str | None,
        is_local: bool,
    ) -> str:
        # The recorded name wins locally; a peer's header wins for peer content
        if is_local:
            filename = record.filename or observed_filename
        else:
            filename = observed_filename or record.filename
        if filename:
            return filename

        if encoding is HashEncoding.CIDV0 and not self._is_bucket_cid(
            encoding, is_local
        ):
            # The directory-wrapped CID covers the filename, so it cannot be verified
            raise UnknownFilenameError(
                f"No filename known for attachment {record.id} "
                f"({record.integrity_hash})"
            )
        return record.integrity_hash if is_local else EXTERNAL_FILENAME

    async def _verify(
        self,
        record: AttachmentRecord,
        encoding: HashEncoding,
        content: bytes,
        filename: str,
        is_local: bool,
    ) -> None:
        if self._is_bucket_cid(encoding, is_local):
            actual = await asyncio.to_thread(file_cid, content)
        elif is_local and encoding is self._storage.encoding:
            actual = await self._storage.verify(content, filename)
        else:
            actual = await asyncio.to_thread(
                compute_integrity_hash, encoding, content, filename
            )

        if not hashes_match(encoding, record.integrity_hash, actual):
            logger.error(
                f"Integrity check failed for attachment {record.id}: "
                f"expected {record.integrity_hash}, computed {actual}"
            )
            raise IntegrityCheckFailedError(
                f"Attachment {record.id} failed integrity check"
            )

    async def _backfill(
        self,
        record: AttachmentRecord,
        encoding: HashEncoding,
        content: bytes,
        observed_filename: str | None,
    ) -> None:
        patch: dict[str, Any] = {}
        if record.filename is None and observed_filename:
            patch["filename"] = observed_filename
        if record.size is None:
            patch["size"] = len(content)
        if record.encoding is None:
            patch["encoding"] = encoding
        if not patch:
            return

        try:
            async with get_db_context(self._engine) as db:
                await db.attachments.update({"id": record.id}, patch)
            logger.info(f"Backfilled {sorted(patch)} for attachment {record.id}")
        except Exception as e:
            # Backfill failures never fail the request
            logger.warning(f"Error updating attachment {record.id} metadata: {e}")
