"""
Pytest Configuration and Fixtures
=================================

Each test gets a fresh in-memory SQLite database (via aiosqlite) with
the full schema, and an HTTP client wired to it.
"""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.config import settings
from app.db.base import Base
from app.db.session import get_db
from app.main import app
from app.services import cache

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

SERVICE_KEY = "test-internal-key"
CRON_SECRET = "test-cron-secret"


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Known secrets, no Redis, and a small retry budget for every test."""
    monkeypatch.setattr(settings, "INTERNAL_API_KEY", SERVICE_KEY)
    monkeypatch.setattr(settings, "CRON_SECRET", CRON_SECRET)
    monkeypatch.setattr(settings, "REDIS_URL", "")
    monkeypatch.setattr(settings, "DLQ_MAX_ATTEMPTS", 3)
    monkeypatch.setattr(settings, "DLQ_ALERT_THRESHOLD", 20)
    monkeypatch.setattr(cache, "_redis_client", None)
    return settings


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite defers BEGIN until the first DML statement, which breaks
    # SAVEPOINT; take over transaction control explicitly.
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """
    Create a test client bound to the test database.

    The engine shares one SQLite connection, so tests must commit or
    close their own session before issuing a request.
    """

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def service_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {SERVICE_KEY}"}


@pytest.fixture
def cron_headers() -> dict[str, str]:
    return {"X-Cron-Secret": CRON_SECRET}

