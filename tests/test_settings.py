"""Tests for settings validation (database, guard, logging)."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from src.config.settings import DatabaseSettings, GuardSettings, LoggingSettings, Settings
from src.store.database import database_url


class TestDatabaseSettings:
    def test_defaults(self) -> None:
        s = DatabaseSettings()
        assert s.name == "kanguard"
        assert s.schema_ == "kanguard"
        assert s.pool_size == 5

    def test_foreign_schema_rejected(self) -> None:
        with pytest.raises(ValidationError, match="DATABASE_SCHEMA must be 'kanguard'"):
            DatabaseSettings(DATABASE_SCHEMA="public")

    def test_pool_size_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            DatabaseSettings(pool_size=0)

    def test_url_driver_for_runtime_and_migrations(self) -> None:
        s = DatabaseSettings(host="db", port=6543, user="kan", password="pw", name="kanguard_test")
        assert database_url(s) == "postgresql+asyncpg://kan:pw@db:6543/kanguard_test"
        assert database_url(s, driver="psycopg") == (
            "postgresql+psycopg://kan:pw@db:6543/kanguard_test"
        )


class TestGuardSettings:
    def test_defaults_fail_closed(self) -> None:
        s = GuardSettings()
        assert s.require_agent_lease is True
        assert s.default_lease_ttl_seconds == 86400
        assert s.bootstrap_kind_catalog is True

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GUARD_REQUIRE_AGENT_LEASE", "false")
        monkeypatch.setenv("GUARD_DEFAULT_LEASE_TTL_SECONDS", "600")
        s = GuardSettings()
        assert s.require_agent_lease is False
        assert s.default_lease_ttl_seconds == 600

    def test_default_ttl_cannot_exceed_max(self) -> None:
        with pytest.raises(ValidationError, match="must not exceed"):
            GuardSettings(default_lease_ttl_seconds=120, max_lease_ttl_seconds=60)

    def test_non_positive_ttl_rejected(self) -> None:
        with pytest.raises(ValidationError):
            GuardSettings(default_lease_ttl_seconds=0)


class TestLoggingSettings:
    def test_level_is_normalized(self) -> None:
        assert LoggingSettings(level=" debug ").level == "DEBUG"

    def test_unknown_level_rejected(self) -> None:
        with pytest.raises(ValidationError, match="LOGGING_LEVEL must be one of"):
            LoggingSettings(level="loud")


class TestRootSettings:
    def test_composes_sections(self) -> None:
        s = Settings()
        assert isinstance(s.database, DatabaseSettings)
        assert isinstance(s.guard, GuardSettings)
        assert isinstance(s.logging, LoggingSettings)
