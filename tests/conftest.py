"""Shared pytest fixtures for kanguard tests.

Unit tests run against the in-memory store with a controllable clock.

Integration tests get a containerized PostgreSQL via two modes:
1. TEST_DATABASE_* env vars present → connect to external PG (CI scenario)
2. Otherwise → testcontainers auto-starts a temporary PG container (local dev)

Safety: refuses to run against any database whose name doesn't contain '_test'.
"""

from __future__ import annotations

import itertools
import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.config.settings import GuardSettings, Settings
from src.constants import DB_SCHEMA
from src.guard.context import MutationContext
from src.leases.models import CapabilityLease
from src.runtime import GuardRuntime, build_runtime
from src.store.memory_store import MemoryGuardStore
from src.store.models import Base

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock shared by every service in a runtime."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def sequential_ids(prefix: str = "id"):
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


def _agent_context(lease: CapabilityLease, *, token: str | None = None) -> MutationContext:
    return MutationContext.for_agent(
        lease.agent_name,
        instance_id=lease.instance_id,
        lease_token=token if token is not None else lease.lease_token,
    )


@pytest.fixture
def as_agent():
    """Build the mutation context presenting a lease tuple (optionally with a wrong token)."""
    return _agent_context


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(guard=GuardSettings(require_agent_lease=True))


@pytest_asyncio.fixture
async def runtime(clock: FakeClock, settings: Settings) -> GuardRuntime:
    """Memory-backed runtime with the built-in kind catalog."""
    rt = build_runtime(MemoryGuardStore(), settings, clock=clock, id_factory=sequential_ids())
    await rt.catalog.ensure_defaults()
    return rt


@pytest.fixture
def user() -> MutationContext:
    return MutationContext.for_user()


# ── PostgreSQL (integration) ──


def _validate_test_db_name(name: str) -> None:
    """Safety: refuse to truncate a database whose name doesn't contain '_test'."""
    if "_test" not in name.lower():
        raise RuntimeError(
            f"Refusing to run tests against database '{name}': "
            "name must contain '_test' to prevent accidental data loss. "
            "Set TEST_DATABASE_NAME to a test-specific database."
        )


def _build_pg_url_from_env() -> str | None:
    """Build async PG URL from TEST_DATABASE_* env vars, or return None."""
    host = os.getenv("TEST_DATABASE_HOST")
    if host is None:
        return None
    port = os.getenv("TEST_DATABASE_PORT", "5432")
    user = os.getenv("TEST_DATABASE_USER", "postgres")
    password = os.getenv("TEST_DATABASE_PASSWORD", "")
    name = os.getenv("TEST_DATABASE_NAME", "kanguard_test")
    _validate_test_db_name(name)
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{name}"


@pytest.fixture(scope="session")
def _pg_container():
    """Manage testcontainers PostgreSQL lifecycle.

    Yields (url, container) where container is None if using external PG.
    """
    url = _build_pg_url_from_env()
    if url is not None:
        yield url, None
        return

    from testcontainers.postgres import PostgresContainer

    container = PostgresContainer("postgres:16", dbname="kanguard_test")
    container.start()

    host = container.get_container_host_ip()
    port = container.get_exposed_port(5432)
    dbname = container.dbname
    _validate_test_db_name(dbname)

    url = f"postgresql+asyncpg://{container.username}:{container.password}@{host}:{port}/{dbname}"

    yield url, container

    container.stop()


@pytest.fixture(scope="session")
def pg_url(_pg_container) -> str:
    """Provide an async PostgreSQL URL for integration tests."""
    url, _ = _pg_container
    return url


@pytest_asyncio.fixture
async def db_engine(pg_url: str):
    """Per-test engine with a freshly created schema; dropped on teardown."""
    engine = create_async_engine(pg_url, echo=False)

    async with engine.begin() as conn:
        await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {DB_SCHEMA}"))
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.execute(text(f"DROP SCHEMA IF EXISTS {DB_SCHEMA} CASCADE"))

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session_factory(db_engine) -> AsyncGenerator[async_sessionmaker[AsyncSession]]:
    """Provide an async session factory bound to the test engine."""
    yield async_sessionmaker(db_engine, expire_on_commit=False)
