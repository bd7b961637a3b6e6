"""
Base module for database connection and metadata.

This module defines the SQLAlchemy metadata object and engine factory shared
across storage modules to prevent circular dependencies.
"""

import logging
from typing import Any

from sqlalchemy import MetaData, event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool
from sqlalchemy.pool.base import _ConnectionRecord

logger = logging.getLogger(__name__)

# Define shared metadata object
metadata = MetaData()


def create_engine_with_sqlite_optimizations(database_url: str) -> AsyncEngine:
    """Create engine with SQLite optimizations if applicable."""
    # StaticPool reuses the single SQLite connection; NullPool avoids
    # event loop affinity problems with asyncpg connections
    is_sqlite = database_url.startswith("sqlite")
    pool_class = StaticPool if is_sqlite else NullPool

    engine = create_async_engine(
        database_url,
        echo=False,
        connect_args={
            "timeout": 30,  # 30 second busy timeout for SQLite
            "check_same_thread": False,
        }
        if is_sqlite
        else {},
        pool_pre_ping=pool_class != NullPool,
        poolclass=pool_class,
    )

    if not is_sqlite:
        return engine

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(
        dbapi_connection: Any,  # noqa: ANN401 # DBAPI connection type varies
        connection_record: _ConnectionRecord,
    ) -> None:
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.execute("PRAGMA synchronous=NORMAL")
            logger.debug("Applied SQLite optimizations")
        finally:
            cursor.close()

    return engine
