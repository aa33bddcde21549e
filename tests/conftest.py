"""
Shared test configuration and fixtures.

Provides the in-memory collaborators and a wired `AccountOrchestrator` for
orchestrator tests, a fake Redis client for the Redis stores, and a per-test
PostgreSQL database for the SQL stores (skipped when PostgreSQL is not
reachable).
"""

import os
import uuid

import fakeredis.aioredis
import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from social.atmd.account.orchestrator import AccountOrchestrator
from social.atmd.model.base import Base

import social.atmd.model.account  # noqa: F401  registers the tables on Base

from fakes import (
    FakeGitHubProvider,
    FakeIdentityProvider,
    InMemoryAccountStore,
    InMemoryConnectionStore,
    InMemorySessionStore,
    InMemoryStateStore,
)


@pytest.fixture
def identity_provider():
    return FakeIdentityProvider()


@pytest.fixture
def github_provider():
    return FakeGitHubProvider()


@pytest.fixture
def state_store():
    return InMemoryStateStore()


@pytest.fixture
def session_store():
    return InMemorySessionStore()


@pytest.fixture
def account_store():
    return InMemoryAccountStore()


@pytest.fixture
def connection_store():
    return InMemoryConnectionStore()


@pytest.fixture
def orchestrator(
    identity_provider,
    github_provider,
    state_store,
    session_store,
    account_store,
    connection_store,
):
    return AccountOrchestrator(
        public_url="https://atmd.test",
        github_client_id="Iv1.client",
        github_app_name="atmd-app",
        identity_provider=identity_provider,
        github_provider=github_provider,
        state_store=state_store,
        session_store=session_store,
        account_store=account_store,
        connection_store=connection_store,
        state_ttl=3600,
        call_timeout=1.0,
    )


# Test database configuration
TEST_DB_HOST = os.getenv("TEST_DB_HOST", "postgres")
TEST_DB_PORT = os.getenv("TEST_DB_PORT", "5432")
TEST_DB_USER = os.getenv("TEST_DB_USER", "postgres")
TEST_DB_PASSWORD = os.getenv("TEST_DB_PASSWORD", "password")

# Admin URL for database creation/deletion (connects to postgres database)
ADMIN_DATABASE_URL = f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@{TEST_DB_HOST}:{TEST_DB_PORT}/postgres"


async def check_postgres_available():
    """Check if PostgreSQL is available for testing."""
    try:
        admin_engine = create_async_engine(ADMIN_DATABASE_URL, echo=False)
        async with admin_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        await admin_engine.dispose()
        return True
    except Exception:
        return False


@pytest_asyncio.fixture(scope="function")
async def test_database():
    """Create and clean up a uniquely named database for each test function."""
    if not await check_postgres_available():
        pytest.skip("PostgreSQL database not available for testing")

    unique_db_name = f"atmd_test_{uuid.uuid4().hex[:8]}"
    unique_db_url = (
        f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@"
        f"{TEST_DB_HOST}:{TEST_DB_PORT}/{unique_db_name}"
    )

    admin_engine = create_async_engine(
        ADMIN_DATABASE_URL, echo=False, isolation_level="AUTOCOMMIT"
    )

    try:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"CREATE DATABASE {unique_db_name}"))

        yield unique_db_url

    finally:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"DROP DATABASE IF EXISTS {unique_db_name}"))
        await admin_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def engine(test_database):
    """Create async SQLAlchemy engine with all tables created."""
    engine = create_async_engine(test_database, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def database_session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()
