"""Pytest configuration and fixtures."""
import os

# Settings are read at import time; configure before cash_snapshot loads
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENCRYPTION_KEY"] = "AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA="
os.environ["PLAID_CLIENT_ID"] = "test-client-id"
os.environ["PLAID_SECRET"] = "test-secret"
os.environ["RATE_LIMIT_STORAGE_URI"] = "memory://"
os.environ["RATE_LIMIT_SYNC"] = "3/minute"

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

import cash_snapshot.models  # noqa: E402,F401
from cash_snapshot.core.database import Base, get_db, get_session_factory  # noqa: E402
from cash_snapshot.core.deps import get_optional_plaid_client, get_plaid_client  # noqa: E402
from cash_snapshot.core.limiter import limiter  # noqa: E402
from cash_snapshot.main import app  # noqa: E402

from tests.fixtures import seed_user  # noqa: E402
from tests.fixtures.mocks import FakePlaidClient  # noqa: E402


@pytest.fixture(name="engine")
async def engine_fixture(tmp_path):
    """File-backed SQLite so concurrent item syncs get separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(name="session_factory")
def session_factory_fixture(engine):
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


@pytest.fixture(name="db")
async def db_fixture(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(name="user_id")
async def user_id_fixture(session_factory):
    return await seed_user(session_factory)


@pytest.fixture(name="plaid")
def plaid_fixture():
    return FakePlaidClient()


@pytest.fixture(name="client")
async def client_fixture(session_factory, plaid):
    """API client wired to the test database and the fake Plaid client."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_plaid_client] = lambda: plaid
    app.dependency_overrides[get_optional_plaid_client] = lambda: plaid
    limiter.reset()
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
