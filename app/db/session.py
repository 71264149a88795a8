"""
Database Session Management
===========================

Lazily created async engine and session factory, the ``get_db`` request
dependency, and ``session_scope`` for work outside a request (the job
worker).

Sessions are created with ``expire_on_commit=False``: the lifecycle
commits several times per event (record, apply, park) and keeps using
the loaded rows in between.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import settings

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(url: str) -> dict:
    """Pool options for the server database; SQLite keeps the defaults."""
    if make_url(url).get_backend_name() != "postgresql":
        return {}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        # Shorter than typical PgBouncer / load balancer idle timeouts
        "pool_recycle": settings.DB_POOL_RECYCLE_SECONDS,
        "pool_use_lifo": True,
        "pool_timeout": 30,
    }


def get_engine() -> AsyncEngine:
    """Get or create the async database engine."""
    global _engine

    if _engine is None:
        url = settings.database_url_async
        if not url:
            raise ValueError("DATABASE_URL is not configured")

        _engine = create_async_engine(url, echo=settings.DB_ECHO, **_engine_options(url))
        logger.debug("Created database engine for %s", make_url(url).render_as_string())

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory."""
    global _async_session_factory

    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    return _async_session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session: committed when the route returns, rolled back
    if it raises.

    Usage:
        DBSession = Annotated[AsyncSession, Depends(get_db)]
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """
    Standalone session for background work.

    Unlike ``get_db`` nothing is committed on exit; callers commit at
    their own checkpoints and anything left pending is rolled back.
    """
    async with get_session_factory()() as session:
        try:
            yield session
        finally:
            if session.in_transaction():
                await session.rollback()


async def init_db() -> None:
    """
    Open one connection at startup.

    Fails fast on a bad DATABASE_URL and saves the first webhook the
    connection setup latency.
    """
    async with get_engine().connect() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Database connection established")


async def close_db() -> None:
    """Dispose of the engine on shutdown."""
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connections closed")
