"""Repository for attachment metadata rows."""

import logging
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select

from attachment_service.storage.attachments import AttachmentRecord, attachment_table

from .base import BaseRepository, WhereClause, build_where

logger = logging.getLogger(__name__)

# Columns that can be set through insert/update; id and timestamps are managed here
WRITABLE_COLUMNS = frozenset(
    {"integrity_hash", "owner", "filename", "size", "encoding"}
)


def _check_writable(values: Mapping[str, Any]) -> None:
    unknown = set(values) - WRITABLE_COLUMNS
    if unknown:
        raise ValueError(f"Cannot write attachment columns: {sorted(unknown)}")


class AttachmentsRepository(BaseRepository):
    """Repository for the attachment metadata table."""

    async def get(self, where: WhereClause | None = None) -> list[AttachmentRecord]:
        """Get attachment records matching a where clause.

        Args:
            where: Column filters; all rows are returned when omitted

        Returns:
            Matching records, oldest first
        """
        query = select(attachment_table).order_by(
            attachment_table.c.created_at, attachment_table.c.id
        )
        if where:
            query = query.where(build_where(attachment_table, where))
        rows = await self._db.fetch_all(query)
        return [AttachmentRecord.model_validate(row) for row in rows]

    async def get_by_id(self, attachment_id: str) -> AttachmentRecord | None:
        """Get a single attachment by its ID."""
        records = await self.get({"id": attachment_id})
        return records[0] if records else None

    async def get_by_integrity_hash(
        self, integrity_hash: str
    ) -> AttachmentRecord | None:
        """Get the first attachment recorded under an integrity hash."""
        records = await self.get({"integrity_hash": integrity_hash})
        return records[0] if records else None

    async def insert(self, values: Mapping[str, Any]) -> AttachmentRecord:
        """Insert a new attachment row.

        Args:
            values: Column values; ``integrity_hash`` and ``owner`` are required

        Returns:
            The inserted record with its generated ID and timestamps
        """
        _check_writable(values)
        now = datetime.now(UTC)
        row = {
            "filename": None,
            "size": None,
            "encoding": None,
            **values,
            "id": str(uuid.uuid4()),
            "created_at": now,
            "updated_at": now,
        }
        stmt = attachment_table.insert().values(**row)
        await self._execute_with_logging("insert_attachment", stmt)
        logger.info(
            f"Inserted attachment {row['id']} with integrity hash {row['integrity_hash']}"
        )
        return AttachmentRecord.model_validate(row)

    async def update(
        self, where: WhereClause, patch: Mapping[str, Any]
    ) -> list[AttachmentRecord]:
        """Update attachment rows matching a where clause.

        Args:
            where: Column filters selecting the rows to update
            patch: New column values

        Returns:
            The updated records
        """
        _check_writable(patch)
        ids_query = select(attachment_table.c.id).where(
            build_where(attachment_table, where)
        )
        ids = [row["id"] for row in await self._db.fetch_all(ids_query)]
        if not ids:
            return []

        stmt = (
            attachment_table.update()
            .where(attachment_table.c.id.in_(ids))
            .values(**patch, updated_at=datetime.now(UTC))
        )
        await self._execute_with_logging("update_attachment", stmt)
        return await self.get([("id", "IN", ids)])

    async def delete(self, where: WhereClause) -> int:
        """Delete attachment rows matching a where clause.

        Returns:
            Number of rows deleted
        """
        if not where:
            raise ValueError("Refusing to delete attachments without a filter")
        stmt = attachment_table.delete().where(build_where(attachment_table, where))
        result = await self._execute_with_logging("delete_attachment", stmt)
        return result.rowcount  # type: ignore[attr-defined]
