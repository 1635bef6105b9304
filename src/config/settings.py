from __future__ import annotations

from typing import Self

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.constants import DB_SCHEMA, DEFAULT_LEASE_TTL_SECONDS

# Load .env once at module import so every BaseSettings subclass sees the env vars
load_dotenv()


class DatabaseSettings(BaseSettings):
    """PostgreSQL connection settings. Env vars prefixed with DATABASE_."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = ""
    name: str = "kanguard"
    schema_: str = Field(DB_SCHEMA, validation_alias="DATABASE_SCHEMA")
    pool_size: int = Field(5, gt=0)
    max_overflow: int = Field(10, ge=0)

    @field_validator("schema_")
    @classmethod
    def _validate_schema(cls, v: str) -> str:
        if v != DB_SCHEMA:
            msg = f"DATABASE_SCHEMA must be '{DB_SCHEMA}' (got '{v}')."
            raise ValueError(msg)
        return v


class GuardSettings(BaseSettings):
    """Capability-lease and mutation-guard settings. Env vars prefixed with GUARD_."""

    model_config = SettingsConfigDict(env_prefix="GUARD_")

    require_agent_lease: bool = True
    default_lease_ttl_seconds: int = Field(DEFAULT_LEASE_TTL_SECONDS, gt=0)
    max_lease_ttl_seconds: int = Field(7 * DEFAULT_LEASE_TTL_SECONDS, gt=0)
    bootstrap_kind_catalog: bool = True

    @model_validator(mode="after")
    def _validate(self) -> Self:
        if self.default_lease_ttl_seconds > self.max_lease_ttl_seconds:
            raise ValueError(
                f"default_lease_ttl_seconds ({self.default_lease_ttl_seconds}) must not exceed "
                f"max_lease_ttl_seconds ({self.max_lease_ttl_seconds})"
            )
        return self


class LoggingSettings(BaseSettings):
    """Log rendering settings. Env vars prefixed with LOGGING_."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_")

    json_output: bool = True
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def _validate_level(cls, v: str) -> str:
        v = v.strip().upper()
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v not in allowed:
            msg = f"LOGGING_LEVEL must be one of {sorted(allowed)} (got '{v}')"
            raise ValueError(msg)
        return v


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    guard: GuardSettings = Field(default_factory=GuardSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on invalid values."""
    return Settings()
