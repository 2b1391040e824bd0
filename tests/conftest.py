"""
Pytest fixtures for SendGate tests.
"""

import os

import pytest
from httpx import ASGITransport, AsyncClient

# Ensure test config is set before importing sendgate modules.
os.environ.setdefault("SENDGATE_ENV", "development")
os.environ.setdefault("SENDGATE_STALL_SWEEP_ENABLED", "false")

from sendgate.config import Settings
from sendgate.db.base import Database
from sendgate.observability.metrics import metrics

from support import TEST_DATABASE_URL, TENANT


def _ensure_test_database_url(database_url: str) -> None:
    if "test" not in database_url:
        raise RuntimeError(
            "Refusing to run SendGate tests against a non-test database. "
            "Set SENDGATE_TEST_DATABASE_URL to a dedicated test database."
        )


@pytest.fixture
def config(tmp_path) -> Settings:
    """Settings for one test, on a throwaway SQLite file unless PostgreSQL is configured."""
    if TEST_DATABASE_URL:
        _ensure_test_database_url(TEST_DATABASE_URL)
        database_url = TEST_DATABASE_URL
    else:
        database_url = f"sqlite+aiosqlite:///{tmp_path / 'sendgate_test.db'}"
    return Settings(
        database_url=database_url,
        default_page_size=10,
        max_page_size=50,
        default_list_limit=20,
        max_list_limit=100,
    )


@pytest.fixture
async def db(config):
    """Fresh schema per test."""
    database = Database(config)
    await database.drop_all()
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
async def session(db):
    """Provide a database session per test; committed on exit."""
    async with db.session() as session:
        yield session


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
async def client(db):
    """Async test client with overridden dependencies."""
    from sendgate.api.deps import get_db_session
    from sendgate.main import app

    async def override_get_db_session():
        async with db.session() as session:
            yield session

    app.state.db = db
    app.dependency_overrides[get_db_session] = override_get_db_session

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-Tenant-ID": TENANT},
    ) as client:
        yield client

    app.dependency_overrides.clear()
