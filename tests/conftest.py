"""Pytest configuration and fixtures for fasthook tests."""

import os
from collections.abc import AsyncGenerator, Generator
from datetime import UTC, datetime
from pathlib import Path

import pytest
from testcontainers.postgres import PostgresContainer

# Set required environment variables before any imports
os.environ.setdefault("FASTHOOK_API_KEY", "test_service_api_key_12345")
os.environ.setdefault("FASTHOOK_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fasthook.config import Settings, clear_settings_cache, get_settings
from fasthook.db.models import Base, WebhookEndpoint
from fasthook.db.session import get_session
from fasthook.main import create_app
from fasthook.webhook.dispatcher import EventDispatcher
from fasthook.webhook.registry import create_endpoint

TEST_API_KEY = "test_service_api_key_12345"
TEST_OWNER = "owner-1"
# "postgres" runs the suite against a PostgreSQL container (needs Docker)
TEST_DATABASE = os.environ.get("FASTHOOK_TEST_DATABASE", "sqlite")


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands datetimes back naive; they are stored as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """Create PostgreSQL container for test session."""
    with PostgresContainer("postgres:16-alpine") as postgres:
        yield postgres


@pytest.fixture(scope="session")
def postgres_url(postgres_container: PostgresContainer) -> str:
    """Get async PostgreSQL connection URL from container."""
    # testcontainers returns psycopg2 URL, convert to asyncpg
    url = postgres_container.get_connection_url()
    return url.replace("psycopg2", "asyncpg")


@pytest.fixture
def database_url(request: pytest.FixtureRequest, tmp_path: Path) -> str:
    """PostgreSQL in a container with FASTHOOK_TEST_DATABASE=postgres, else a SQLite file."""
    if TEST_DATABASE == "postgres":
        return request.getfixturevalue("postgres_url")
    return f"sqlite+aiosqlite:///{tmp_path / 'fasthook.db'}"


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings with a fresh test database."""
    clear_settings_cache()
    return Settings(
        database_url=database_url,
        api_key=TEST_API_KEY,
        api_host="127.0.0.1",
        api_port=18000,
        instance_id="test-instance",
        webhook_ssrf_protection=False,
        worker_poll_interval=0.05,
    )


@pytest_asyncio.fixture
async def test_engine(test_settings: Settings):
    """Create test database engine with fresh tables."""
    engine = create_async_engine(test_settings.database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def test_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def endpoint_with_secret(
    test_session: AsyncSession,
    test_settings: Settings,
) -> tuple[WebhookEndpoint, str]:
    """A committed endpoint subscribed to license.sold, with its plaintext secret."""
    endpoint, secret = await create_endpoint(
        test_session,
        owner_id=TEST_OWNER,
        url="https://receiver.example.com/hooks",
        events=["license.sold"],
        settings=test_settings,
    )
    await test_session.commit()
    return endpoint, secret


@pytest_asyncio.fixture
async def dispatcher(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[EventDispatcher, None]:
    """Running event dispatcher bound to the test database."""
    event_dispatcher = EventDispatcher(test_settings, session_factory=session_factory)
    event_dispatcher.start()
    yield event_dispatcher
    await event_dispatcher.stop(drain=False)


@pytest_asyncio.fixture
async def app(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: EventDispatcher,
) -> AsyncGenerator[FastAPI, None]:
    """Create test FastAPI application."""
    application = create_app(test_settings)
    # ASGITransport does not run the lifespan
    application.state.dispatcher = dispatcher

    async def override_get_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session
            await session.commit()

    application.dependency_overrides[get_session] = override_get_session
    application.dependency_overrides[get_settings] = lambda: test_settings

    yield application

    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def auth_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create a client authenticated as the product acting for TEST_OWNER."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-API-Key": TEST_API_KEY, "X-Owner-ID": TEST_OWNER},
    ) as ac:
        yield ac
