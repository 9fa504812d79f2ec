"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
market deal importer, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

TIB = 1 << 40


class DatabaseSettings(BaseSettings):
    """Database connection and pool settings."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )
    pool_size: int = Field(
        default=16,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=1024,
        description="Persistent connections kept by the pool",
    )
    max_overflow: int = Field(
        default=16,
        alias="DATABASE_MAX_OVERFLOW",
        ge=0,
        le=1024,
        description="Extra connections allowed above pool_size",
    )
    pool_timeout_seconds: float = Field(
        default=30.0,
        alias="DATABASE_POOL_TIMEOUT_SECONDS",
        gt=0.0,
        le=3600.0,
        description="How long to wait for a pooled connection",
    )
    create_schema: bool = Field(
        default=True,
        alias="DATABASE_CREATE_SCHEMA",
        description="Create missing tables and indexes before ingesting",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v

    @property
    def connection_ceiling(self) -> int:
        """Maximum number of connections the pool will ever open."""
        return self.pool_size + self.max_overflow


class IngestSettings(BaseSettings):
    """Streaming ingestion settings."""

    model_config = SettingsConfigDict(env_prefix="INGEST_", extra="ignore")

    input_url: str = Field(
        default="StateMarketDeals.json",
        alias="INPUT_URL",
        description="HTTP(S) URL or local path of the StateMarketDeals JSON object",
    )
    batch_size: int = Field(
        default=100,
        alias="BATCH_SIZE",
        ge=1,
        le=2_000,
        description="Deals per bulk upsert statement",
    )
    queue_size: int = Field(
        default=16,
        alias="QUEUE_SIZE",
        ge=1,
        le=1024,
        description="Maximum concurrently in-flight write/resolve tasks",
    )
    http_timeout_seconds: float = Field(
        default=60.0,
        alias="INGEST_HTTP_TIMEOUT_SECONDS",
        gt=0.0,
        description="Read/connect timeout for HTTP sources",
    )
    progress_every: int = Field(
        default=10_000,
        alias="INGEST_PROGRESS_EVERY",
        ge=1,
        description="Log a progress line every N processed deals",
    )
    max_consecutive_write_failures: int = Field(
        default=10,
        alias="INGEST_MAX_CONSECUTIVE_WRITE_FAILURES",
        ge=1,
        le=100_000,
        description="Consecutive failed batch writes treated as the store being unavailable",
    )

    @field_validator("input_url")
    @classmethod
    def validate_input_url(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("INPUT_URL must not be empty")
        return v.strip()


class LotusSettings(BaseSettings):
    """Filecoin JSON-RPC settings used to resolve client addresses."""

    model_config = SettingsConfigDict(env_prefix="LOTUS_", extra="ignore")

    rpc_url: str = Field(
        default="https://api.node.glif.io/rpc/v0",
        alias="LOTUS_RPC_URL",
        description="Lotus-compatible JSON-RPC endpoint",
    )
    auth_token: SecretStr | None = Field(
        default=None,
        alias="LOTUS_AUTH_TOKEN",
        description="Bearer token for the RPC endpoint",
    )
    resolve_clients: bool = Field(
        default=True,
        alias="LOTUS_RESOLVE_CLIENTS",
        description="Resolve unseen client identifiers to account addresses",
    )
    timeout_seconds: float = Field(
        default=30.0,
        alias="LOTUS_TIMEOUT_SECONDS",
        gt=0.0,
        description="Per-request RPC timeout",
    )
    max_requests_per_second: float = Field(
        default=10.0,
        alias="LOTUS_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=1_000.0,
        description="Client-side RPC rate limit",
    )

    @field_validator("rpc_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate RPC URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class TaggingSettings(BaseSettings):
    """Classification pass thresholds."""

    model_config = SettingsConfigDict(env_prefix="TAGGING_", extra="ignore")

    min_total_piece_size: int = Field(
        default=TIB,
        alias="TAGGING_MIN_TOTAL_PIECE_SIZE",
        ge=0,
        description="Total verified piece size (bytes) an owner must exceed to be eligible",
    )
    min_age_weeks: int = Field(
        default=6,
        alias="TAGGING_MIN_AGE_WEEKS",
        ge=0,
        le=520,
        description="Weeks since an owner's latest sector before it is eligible",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from market_deal_importer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.ingest.batch_size)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    ingest: IngestSettings = Field(
        default_factory=lambda: IngestSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    lotus: LotusSettings = Field(
        default_factory=lambda: LotusSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    tagging: TaggingSettings = Field(
        default_factory=lambda: TaggingSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    @model_validator(mode="after")
    def _queue_fits_pool(self) -> Settings:
        # Every in-flight task holds its own connection.
        if self.ingest.queue_size > self.database.connection_ceiling:
            raise ValueError(
                f"QUEUE_SIZE ({self.ingest.queue_size}) must not exceed "
                f"DATABASE_POOL_SIZE + DATABASE_MAX_OVERFLOW ({self.database.connection_ceiling})"
            )
        return self

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "database": {
                "pool_size": str(self.database.pool_size),
                "max_overflow": str(self.database.max_overflow),
                "pool_timeout_seconds": str(self.database.pool_timeout_seconds),
                "create_schema": str(self.database.create_schema),
            },
            "ingest": {
                "input_url": self._redact_url(self.ingest.input_url),
                "batch_size": str(self.ingest.batch_size),
                "queue_size": str(self.ingest.queue_size),
                "max_consecutive_write_failures": str(self.ingest.max_consecutive_write_failures),
            },
            "lotus": {
                "rpc_url": self.lotus.rpc_url,
                "auth_token": "(set)" if self.lotus.auth_token else "(not set)",
                "resolve_clients": str(self.lotus.resolve_clients),
            },
            "tagging": {
                "min_total_piece_size": str(self.tagging.min_total_piece_size),
                "min_age_weeks": str(self.tagging.min_age_weeks),
            },
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: Literal["ingest", "tag", "run"]) -> None:
        """Validate command-specific requirements.

        Client resolution talks to an authenticated RPC endpoint; refuse to
        start an ingest that would fail every lookup.
        """
        if command in ("ingest", "run") and self.lotus.resolve_clients and not self.lotus.auth_token:
            raise ValueError(
                "LOTUS_AUTH_TOKEN is required to resolve client addresses "
                "(set LOTUS_RESOLVE_CLIENTS=false to skip resolution)"
            )

    def with_overrides(
        self,
        *,
        input_url: str | None = None,
        batch_size: int | None = None,
        queue_size: int | None = None,
        resolve_clients: bool | None = None,
    ) -> Settings:
        """Return validated settings with command-line overrides applied."""
        ingest_updates = {
            "INPUT_URL": input_url,
            "BATCH_SIZE": batch_size,
            "QUEUE_SIZE": queue_size,
        }
        ingest = IngestSettings(
            **{
                **self.ingest.model_dump(by_alias=True),
                **{k: v for k, v in ingest_updates.items() if v is not None},
            }
        )
        lotus = self.lotus
        if resolve_clients is not None:
            lotus = LotusSettings(
                **{**self.lotus.model_dump(by_alias=True), "LOTUS_RESOLVE_CLIENTS": resolve_clients}
            )
        return Settings(
            database=self.database,
            ingest=ingest,
            lotus=lotus,
            tagging=self.tagging,
            LOG_LEVEL=self.log_level,
        )

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when environment variables change.
    """
    get_settings.cache_clear()
