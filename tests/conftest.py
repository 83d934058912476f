"""pytest fixtures for scheduler tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- database_url: Temporary-file SQLite database per test (real concurrent connections)
- session_factory / session / uow_factory: Database access on a freshly created schema
- settings: Test Settings bound to the temporary database
- subscription / make_job: Domain factories
- postgres_url: Opt-in PostgreSQL container with migrations applied (RUN_POSTGRES_TESTS=1)
"""

import os
import subprocess
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel

import manyfutures.models  # noqa: F401  (registers tables)
from manyfutures.core.config import Settings
from manyfutures.core.database import setup_db_session
from manyfutures.models.schedule_job import ScheduleJob
from manyfutures.models.subscription import Subscription, SubscriptionTier
from manyfutures.services.idempotency import derive_idempotency_key
from manyfutures.uow import create_uow_factory
from tests.helpers import NOW

PROJECT_ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests.

    Autouse fixture ensures TZ=UTC is set before any test runs.
    This prevents timezone-dependent behavior and ensures reproducible tests.
    """
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def database_url(tmp_path) -> str:
    """SQLite file database, unique per test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'scheduler.db'}"


@pytest_asyncio.fixture(scope="function")
async def session_factory(database_url):
    """Session factory on a freshly created schema."""
    factory = setup_db_session(database_url, pool_size=5)
    engine = factory.kw["bind"]
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide function-scoped database session.

    Each test gets a fresh database file, so no truncation is needed.
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory.

    Every UnitOfWork gets its own session (and connection), like in production.
    """
    return create_uow_factory(session_factory)


@pytest.fixture
def settings(database_url) -> Settings:
    return Settings(DATABASE_URL=database_url, APP_ENV="test")  # type: ignore[call-arg]


@pytest_asyncio.fixture(scope="function")
async def subscription(uow_factory) -> Subscription:
    """A persisted active Starter subscription delivering Mondays 09:00 London time."""
    async with await uow_factory() as uow:
        return await uow.subscriptions.add(
            Subscription(
                name="Retail futures 2030",
                brief="How will autonomous delivery reshape UK high streets?",
                tier=SubscriptionTier.STARTER,
                cadence_days=[1],
                delivery_hour=9,
                created_at=NOW - timedelta(days=30),
            )
        )


@pytest.fixture
def make_job():
    """Factory for unsaved pending jobs due at NOW."""

    def _make_job(subscription_id, **overrides) -> ScheduleJob:
        target = overrides.pop("target_delivery_time", NOW + timedelta(hours=4))
        values = {
            "subscription_id": subscription_id,
            "generation_start_time": NOW - timedelta(minutes=5),
            "target_delivery_time": target,
            "idempotency_key": derive_idempotency_key(subscription_id, target),
            "created_at": NOW - timedelta(minutes=10),
            "updated_at": NOW - timedelta(minutes=10),
        }
        values.update(overrides)
        return ScheduleJob(**values)

    return _make_job


@pytest.fixture(scope="session")
def postgres_url():
    """Provide session-scoped PostgreSQL container with migrations applied.

    Opt-in: set RUN_POSTGRES_TESTS=1 (requires Docker).
    Migrations are applied using subprocess to avoid asyncio event loop conflicts.
    """
    if os.environ.get("RUN_POSTGRES_TESTS") != "1":
        pytest.skip("PostgreSQL tests disabled (set RUN_POSTGRES_TESTS=1)")

    from testcontainers.postgres import PostgresContainer

    with PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_manyfutures",
        driver="psycopg",
    ) as container:
        db_url = container.get_connection_url()

        # Set DATABASE_URL environment variable for alembic env.py
        env = os.environ.copy()
        env["DATABASE_URL"] = db_url

        subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            check=True,
            capture_output=True,
            text=True,
            env=env,
            cwd=PROJECT_ROOT,
        )

        yield db_url
