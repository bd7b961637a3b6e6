"""Transaction scope for metadata operations.

``async with get_db_context(engine) as db`` opens one transaction; repositories
hang off the context and share its connection.
"""

import asyncio
import logging
import random
from types import TracebackType
from typing import TYPE_CHECKING, Any

from sqlalchemy import TextClause
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql import Delete, Insert, Select, Update

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager

    from attachment_service.storage.repositories import AttachmentsRepository


logger = logging.getLogger(__name__)

Statement = Select | Insert | Update | Delete | TextClause


class DatabaseContext:
    """One database transaction, committed on clean exit and rolled back on error.

    Statements that fail with an ``OperationalError`` (a locked SQLite file, a
    dropped connection) are retried with jittered exponential backoff. Every
    other database error propagates immediately.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        max_retries: int = 3,
        base_delay: float = 0.5,
    ) -> None:
        self.engine = engine
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.conn: AsyncConnection | None = None
        self._transaction_cm: AbstractAsyncContextManager[AsyncConnection] | None = None
        self._attachments: AttachmentsRepository | None = None

    async def __aenter__(self) -> "DatabaseContext":
        if self._transaction_cm is not None:
            raise RuntimeError("DatabaseContext is not reentrant")
        self._transaction_cm = self.engine.begin()
        self.conn = await self._transaction_cm.__aenter__()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._transaction_cm is None:
            return
        try:
            await self._transaction_cm.__aexit__(exc_type, exc_val, exc_tb)
        finally:
            self.conn = None
            self._transaction_cm = None

    async def execute_with_retry(
        self,
        query: Statement,
        params: dict[str, Any] | None = None,
    ) -> CursorResult:
        """Execute ``query`` on the open transaction.

        Raises:
            RuntimeError: The context has not been entered.
            OperationalError: The statement still failed after the last retry.
        """
        if self.conn is None:
            raise RuntimeError("No active database connection")

        attempt = 0
        while True:
            try:
                if params:
                    return await self.conn.execute(query, params)
                return await self.conn.execute(query)
            except OperationalError as e:
                attempt += 1
                if attempt >= self.max_retries:
                    logger.error(
                        f"Database statement failed after {attempt} attempts: {e}"
                    )
                    raise
                delay = self.base_delay * (2 ** (attempt - 1)) + random.uniform(
                    0, self.base_delay
                )
                logger.warning(
                    f"Transient database error (attempt {attempt}/{self.max_retries}),"
                    f" retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)

    async def fetch_all(
        self, query: Select | TextClause, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute a SELECT and return its rows as plain dicts."""
        result = await self.execute_with_retry(query, params)
        return [dict(row) for row in result.mappings().all()]

    @property
    def attachments(self) -> "AttachmentsRepository":
        if self._attachments is None:
            from attachment_service.storage.repositories import AttachmentsRepository

            self._attachments = AttachmentsRepository(self)
        return self._attachments


def get_db_context(
    engine: AsyncEngine, max_retries: int = 3, base_delay: float = 0.5
) -> DatabaseContext:
    """Create a DatabaseContext for ``engine``.

    Example:
        ```python
        async with get_db_context(engine) as db:
            record = await db.attachments.get_by_id(attachment_id)
        ```
    """
    return DatabaseContext(engine, max_retries, base_delay)
