"""Attachment metadata table and record model."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from sqlalchemy import BigInteger, Column, DateTime, Enum, Index, String, Table

from attachment_service.hashing import HashEncoding
from attachment_service.storage.base import metadata

# Synthetic filename for attachments uploaded as a JSON request body
JSON_FILENAME = "json"


# --- Pydantic Model for type-safe data transfer ---
class AttachmentRecord(BaseModel):
    """A row of the attachment table."""

    model_config = ConfigDict(frozen=True)

    id: str
    integrity_hash: str
    owner: str
    filename: str | None = None
    size: int | None = None
    encoding: HashEncoding | None = None
    created_at: datetime
    updated_at: datetime


# --- SQLAlchemy Core Table Definition ---
attachment_table = Table(
    "attachment",
    metadata,
    Column("id", String(36), primary_key=True),  # UUID
    Column("integrity_hash", String(255), nullable=False),
    Column("owner", String(255), nullable=False),  # Organisation account address
    Column("filename", String(255), nullable=True),
    Column("size", BigInteger, nullable=True),
    Column(
        "encoding",
        Enum(
            HashEncoding,
            name="attachment_encoding",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
            native_enum=False,
            validate_strings=True,
        ),
        nullable=True,  # NULL for rows created before encodings were recorded
    ),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Index("idx_attachment_integrity_hash", "integrity_hash"),
    Index("idx_attachment_owner_integrity_hash", "owner", "integrity_hash"),
    Index("idx_attachment_updated_at", "updated_at"),
    extend_existing=True,
)
