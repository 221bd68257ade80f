"""Async engine, session factory and connectivity check.

Connection details come from ``DB_*`` settings; PostgreSQL (asyncpg +
pgvector) in production, SQLite (aiosqlite) in tests.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import DatabaseSettings, settings

logger = logging.getLogger(__name__)


def build_engine(config: DatabaseSettings | None = None) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    config = config or settings.db
    kwargs = {"echo": config.echo, "pool_pre_ping": True}
    if make_url(config.url).get_backend_name() != "sqlite":
        kwargs.update(pool_size=config.pool_size, max_overflow=config.max_overflow)
    return create_async_engine(config.url, **kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Job rows are read after commit by the workers
    return async_sessionmaker(bind=bind, expire_on_commit=False, class_=AsyncSession)


engine: AsyncEngine = build_engine()

AsyncSessionMaker = build_session_factory(engine)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI session dependency."""
    async with AsyncSessionMaker() as session:
        yield session


async def database_reachable(session: AsyncSession) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Database check failed: {e}")
        return False
    return True
