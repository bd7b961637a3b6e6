import asyncio
import logging
import random

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine

from attachment_service.storage.attachments import (
    JSON_FILENAME,
    AttachmentRecord,
    attachment_table,
)
from attachment_service.storage.base import (
    create_engine_with_sqlite_optimizations,
    metadata,
)
from attachment_service.storage.context import DatabaseContext, get_db_context

logger = logging.getLogger(__name__)


async def _create_schema(engine: AsyncEngine) -> None:
    """Creates all tables defined in the SQLAlchemy metadata."""
    logger.info("Creating tables from SQLAlchemy metadata...")
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    logger.info("Tables created.")


async def init_db(engine: AsyncEngine, max_retries: int = 5) -> None:
    """
    Initializes the database schema from SQLAlchemy metadata.

    Existing tables are left untouched. Transient connection errors are
    retried with exponential backoff.
    """
    base_delay = 1.0
    for attempt in range(max_retries):
        try:
            logger.info(f"Initializing database schema (attempt {attempt + 1})...")
            await _create_schema(engine)
            logger.info("Database initialization successful.")
            return
        except (DBAPIError, OperationalError) as e:
            logger.warning(
                f"Database connection/operation error during init_db (attempt {attempt + 1}/{max_retries}): {e!r}"
            )
            if attempt == max_retries - 1:
                logger.error(
                    "Max retries exceeded for init_db due to connection/operation error.",
                    exc_info=True,
                )
                raise

        delay = base_delay * (2**attempt) + random.uniform(0, base_delay * 0.5)
        logger.info(f"Retrying init_db in {delay:.2f} seconds...")
        await asyncio.sleep(delay)


__all__ = [
    "JSON_FILENAME",
    "AttachmentRecord",
    "DatabaseContext",
    "attachment_table",
    "create_engine_with_sqlite_optimizations",
    "get_db_context",
    "init_db",
    "metadata",
]
