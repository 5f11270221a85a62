"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
chain asset indexer, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="sqlite+aiosqlite:///./chain_asset_indexer.db",
        alias="DATABASE_URL",
        description="PostgreSQL or SQLite connection string",
    )
    pool_size: int = Field(
        default=20,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=200,
        description="Connection pool size (ignored for SQLite)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection and cache expiry settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )
    cache_ttl_seconds: int = Field(
        default=300,
        alias="CACHE_TTL_SECONDS",
        ge=1,
        le=7 * 24 * 3600,
        description="Expiry applied to every cache-aside write",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class EthereumSettings(BaseSettings):
    """Ethereum JSON-RPC node settings."""

    model_config = SettingsConfigDict(env_prefix="ETH_", extra="ignore")

    rpc_url: str = Field(
        default="http://localhost:8545",
        alias="ETH_RPC_URL",
        description="Primary JSON-RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="ETH_FALLBACK_RPC_URL",
        description="Fallback JSON-RPC endpoint",
    )
    max_requests_per_second: float = Field(
        default=25,
        alias="ETH_MAX_REQUESTS_PER_SECOND",
        gt=0,
        description="Outbound RPC throttle",
    )
    max_retries: int = Field(
        default=3,
        alias="ETH_MAX_RETRIES",
        ge=1,
        le=10,
        description="Attempts per endpoint before failing over",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class ScannerSettings(BaseSettings):
    """Block scanner settings."""

    model_config = SettingsConfigDict(env_prefix="SCANNER_", extra="ignore")

    block_delay_seconds: float = Field(
        default=0.1,
        alias="SCANNER_BLOCK_DELAY_SECONDS",
        ge=0,
        le=60,
        description="Pause between scanned blocks to spare the RPC node",
    )
    log_every_blocks: int = Field(
        default=100,
        alias="SCANNER_LOG_EVERY_BLOCKS",
        ge=1,
        description="Emit a progress line every N scanned blocks",
    )


class RateLimitSettings(BaseSettings):
    """Per-client request throttle settings."""

    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_", extra="ignore")

    requests_per_minute: float = Field(
        default=100,
        alias="RATE_LIMIT_REQUESTS_PER_MINUTE",
        gt=0,
        description="Sustained refill rate per client identity",
    )
    burst: int = Field(
        default=100,
        alias="RATE_LIMIT_BURST",
        ge=1,
        description="Bucket capacity per client identity",
    )
    max_clients: int = Field(
        default=10_000,
        alias="RATE_LIMIT_MAX_CLIENTS",
        ge=1,
        description="Least-recently-used client limiters beyond this are evicted",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from chain_asset_indexer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.log_level)
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
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    ethereum: EthereumSettings = Field(
        default_factory=lambda: EthereumSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    scanner: ScannerSettings = Field(
        default_factory=lambda: ScannerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    rate_limit: RateLimitSettings = Field(
        default_factory=lambda: RateLimitSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

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
            "redis_url": self._redact_url(self.redis.url),
            "cache_ttl_seconds": str(self.redis.cache_ttl_seconds),
            "ethereum": {
                "rpc_url": self._redact_url(self.ethereum.rpc_url),
                "fallback_rpc_url": (
                    self._redact_url(self.ethereum.fallback_rpc_url)
                    if self.ethereum.fallback_rpc_url
                    else "(not set)"
                ),
                "max_requests_per_second": str(self.ethereum.max_requests_per_second),
            },
            "scanner": {
                "block_delay_seconds": str(self.scanner.block_delay_seconds),
            },
            "rate_limit": {
                "requests_per_minute": str(self.rate_limit.requests_per_minute),
                "burst": str(self.rate_limit.burst),
                "max_clients": str(self.rate_limit.max_clients),
            },
            "log_level": self.log_level,
        }

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
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
