"""Async SQLAlchemy engine and sessions.

PostgreSQL (asyncpg) in deployments; SQLite (aiosqlite) is accepted as well.
"""

import logging
from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from ltcms.core.config import settings

logger = logging.getLogger(__name__)


def _engine_options(database_url: str) -> dict[str, Any]:
    """Pool options for the configured backend.

    SQLite (aiosqlite) only gets pre-ping; in-memory SQLite uses a static
    pool that rejects sizing arguments.
    """
    options: dict[str, Any] = {
        "pool_pre_ping": True,
        # Only echo SQL when debug is explicitly enabled
        "echo": settings.debug and settings.log_level == "DEBUG",
    }
    if make_url(database_url).get_backend_name() != "sqlite":
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=settings.db_pool_recycle,
        )
    return options


engine = create_async_engine(settings.database_url, **_engine_options(settings.database_url))

# Session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Base class for models
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session: committed on success, rolled back on any exit.

    Rollback also covers ``asyncio.CancelledError`` from a dropped client.
    """
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise


async def check_db_connection() -> bool:
    """Run ``SELECT 1`` against the configured database."""
    try:
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
            return True
    except (OSError, ConnectionError) as e:
        logger.debug(f"Database connection check failed: {e}")
        return False
    except SQLAlchemyError as e:
        logger.warning(f"Database connection check failed: {e}")
        return False
