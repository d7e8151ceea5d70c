"""
Database Layer

One lazily created async engine per process, shared by the API, the
in-process ingestion worker and the maintenance scripts.

The ledger and the vector store never hold a session across awaits on
other services: each operation opens a short transaction from
``get_session_factory()`` and commits it, so progress written by a
background job is visible to status readers immediately.
"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docchat.core.config import settings

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    global _engine  # noqa: PLW0603
    if _engine is None:
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
        logger.info(
            "Database engine created for %s@%s:%s/%s (pool=%d)",
            settings.POSTGRES_USER,
            settings.POSTGRES_HOST,
            settings.POSTGRES_PORT,
            settings.POSTGRES_DB,
            settings.DATABASE_POOL_SIZE,
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session maker bound to the shared engine; sessions do not expire on commit."""
    global _session_factory  # noqa: PLW0603
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


async def verify_database() -> None:
    """
    Startup check: the database answers and pgvector is installed.

    Raises:
        sqlalchemy.exc.SQLAlchemyError / OSError: Database unreachable.
    """
    async with get_engine().connect() as conn:
        await conn.execute(text("SELECT 1"))
        has_vector = (
            await conn.execute(
                text("SELECT 1 FROM pg_extension WHERE extname = 'vector'")
            )
        ).first() is not None
    if not has_vector:
        logger.warning("pgvector extension not installed; run 'alembic upgrade head'")
    logger.info("Database connection verified")


async def dispose_engine() -> None:
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("Database engine disposed")
