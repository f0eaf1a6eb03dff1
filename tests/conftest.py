"""Pytest configuration and fixtures for Plork federation tests."""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from plork_activitypub.config import PlorkConfig
from plork_activitypub.identity import IdentityService
from plork_activitypub.models import Base
from plork_activitypub.store import SqlStore

TEST_DOMAIN = "test.plork.social"
TEST_BASE_URL = f"https://{TEST_DOMAIN}"


@pytest.fixture
def config() -> PlorkConfig:
    """Create test configuration."""
    return PlorkConfig(
        activitypub={
            "domain": TEST_DOMAIN,
            "base_url": TEST_BASE_URL,
            "host": "127.0.0.1",
            "port": 8080,
        },
        database={"url": "sqlite+aiosqlite:///:memory:"},
    )


@pytest_asyncio.fixture
async def session_maker():
    """Create in-memory database session maker for tests."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, expire_on_commit=False)
    yield maker

    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_maker) -> AsyncSession:
    """Create database session for tests."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def store(session_maker) -> SqlStore:
    """Create a store over the in-memory database."""
    return SqlStore(session_maker)


@pytest.fixture
def identity(store) -> IdentityService:
    """Create identity service for the test domain."""
    return IdentityService(store=store, base_url=TEST_BASE_URL, domain=TEST_DOMAIN)


@pytest_asyncio.fixture
async def alice(identity):
    """Local user alice."""
    return await identity.create_user("alice", display_name="Alice", summary="Hi, I'm Alice")


@pytest_asyncio.fixture
async def bob(identity):
    """Local user bob."""
    return await identity.create_user("bob")
