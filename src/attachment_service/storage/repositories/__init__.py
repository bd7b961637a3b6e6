"""Storage repository implementations."""

from .attachments import AttachmentsRepository
from .base import BaseRepository, WhereClause

__all__ = [
    "AttachmentsRepository",
    "BaseRepository",
    "WhereClause",
]
