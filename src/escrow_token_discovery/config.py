"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for escrow token
discovery, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


def _validate_http_url(v: str) -> str:
    if not v.startswith(("http://", "https://")):
        raise ValueError(f"{v!r} must be an HTTP(S) endpoint")
    return v.rstrip("/")


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or SQLite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (block and decimals cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; caching is disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is not None and not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ChainSettings(BaseSettings):
    """Per-chain RPC settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_urls: dict[str, str] = Field(
        default_factory=dict,
        alias="CHAIN_RPC_URLS",
        description='JSON object mapping chain name to RPC URL, e.g. {"ethereum": "https://..."}',
    )
    fallback_rpc_urls: dict[str, str] = Field(
        default_factory=dict,
        alias="CHAIN_FALLBACK_RPC_URLS",
        description="JSON object mapping chain name to fallback RPC URL",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0,
        le=10_000,
        description="Rate limit per RPC client",
    )
    max_retries: int = Field(
        default=3,
        alias="CHAIN_MAX_RETRIES",
        ge=1,
        le=20,
        description="Attempts per RPC endpoint before failing over",
    )
    retry_delay_seconds: float = Field(
        default=1.0,
        alias="CHAIN_RETRY_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Initial backoff delay between RPC retries",
    )
    extra_range_limit_signatures: list[str] = Field(
        default_factory=list,
        alias="CHAIN_EXTRA_RANGE_LIMIT_SIGNATURES",
        description="Additional provider error substrings meaning 'range too large' (JSON list)",
    )

    @field_validator("rpc_urls", "fallback_rpc_urls")
    @classmethod
    def validate_urls(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate RPC URL formats and normalize chain names."""
        return {chain.lower(): _validate_http_url(url) for chain, url in v.items()}


class ExplorerSettings(BaseSettings):
    """Etherscan-compatible block explorer settings."""

    model_config = SettingsConfigDict(env_prefix="EXPLORER_", extra="ignore")

    api_keys: dict[str, SecretStr] = Field(
        default_factory=dict,
        alias="EXPLORER_API_KEYS",
        description="JSON object mapping chain name to explorer API key",
    )
    api_urls: dict[str, str] = Field(
        default_factory=dict,
        alias="EXPLORER_API_URLS",
        description="JSON object mapping chain name to explorer API URL",
    )
    calls_per_minute: float = Field(
        default=150.0,
        alias="EXPLORER_CALLS_PER_MINUTE",
        gt=0,
        description="Rate limit per explorer client",
    )

    @field_validator("api_urls")
    @classmethod
    def validate_urls(cls, v: dict[str, str]) -> dict[str, str]:
        return {chain.lower(): _validate_http_url(url) for chain, url in v.items()}

    def for_chain(self, chain: str) -> tuple[str, str] | None:
        """(api_url, api_key) when both are configured for `chain`."""
        url = self.api_urls.get(chain)
        key = self.api_keys.get(chain)
        if url is None or key is None:
            return None
        return url, key.get_secret_value()


class CoingeckoSettings(BaseSettings):
    """CoinGecko market-data API settings."""

    model_config = SettingsConfigDict(env_prefix="COINGECKO_", extra="ignore")

    api_key: SecretStr | None = Field(
        default=None,
        alias="COINGECKO_API_KEY",
        description="CoinGecko Pro API key; the public API is used when unset",
    )
    base_url: str = Field(
        default="https://api.coingecko.com/api/v3",
        alias="COINGECKO_BASE_URL",
        description="CoinGecko API base URL",
    )
    calls_per_minute: float = Field(
        default=400.0,
        alias="COINGECKO_CALLS_PER_MINUTE",
        gt=0,
        description="Rate limit for CoinGecko requests",
    )
    markets_batch_size: int = Field(
        default=150,
        alias="COINGECKO_MARKETS_BATCH_SIZE",
        ge=1,
        le=250,
        description="External ids per /coins/markets request",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        return _validate_http_url(v)


class DiscoverySettings(BaseSettings):
    """Escrow token discovery run settings."""

    model_config = SettingsConfigDict(env_prefix="DISCOVERY_", extra="ignore")

    catalog_path: Path = Field(
        default=Path("escrows.json"),
        alias="DISCOVERY_CATALOG_PATH",
        description="JSON catalog of escrows and known tokens",
    )
    output_path: Path = Field(
        default=Path("discovered.json"),
        alias="DISCOVERY_OUTPUT_PATH",
        description="Where the ranked report is written",
    )
    min_market_cap: Decimal = Field(
        default=Decimal("10000000"),
        alias="DISCOVERY_MIN_MARKET_CAP",
        ge=0,
        description="Minimum token market cap (USD) to appear in the report",
    )
    min_missing_value: Decimal = Field(
        default=Decimal("10000"),
        alias="DISCOVERY_MIN_MISSING_VALUE",
        ge=0,
        description="Minimum total escrowed value (USD) to appear in the report",
    )
    indexer_id: str = Field(
        default="escrow_token_discovery",
        alias="DISCOVERY_INDEXER_ID",
        min_length=1,
        max_length=200,
        description="Indexer id under which escrow scan progress is stored",
    )
    configuration_batch_size: int = Field(
        default=5_000,
        alias="DISCOVERY_CONFIGURATION_BATCH_SIZE",
        ge=1,
        le=50_000,
        description="Rows per configuration upsert statement",
    )
    chains: list[str] | None = Field(
        default=None,
        alias="DISCOVERY_CHAINS",
        description="Only scan escrows on these chains (JSON list); all chains when unset",
    )

    @field_validator("chains")
    @classmethod
    def normalize_chains(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return v
        return [chain.lower() for chain in v]


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from escrow_token_discovery.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.discovery.catalog_path)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Each nested BaseSettings needs the same env_file, otherwise it only
    # reads from the process environment.
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
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    explorer: ExplorerSettings = Field(
        default_factory=lambda: ExplorerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    coingecko: CoingeckoSettings = Field(
        default_factory=lambda: CoingeckoSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    discovery: DiscoverySettings = Field(
        default_factory=lambda: DiscoverySettings(
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
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chain": {
                "rpc_urls": ", ".join(f"{c}={self._redact_url(u)}" for c, u in sorted(self.chain.rpc_urls.items()))
                or "(not set)",
                "fallback_chains": ", ".join(sorted(self.chain.fallback_rpc_urls)) or "(not set)",
                "max_requests_per_second": str(self.chain.max_requests_per_second),
                "max_retries": str(self.chain.max_retries),
            },
            "explorer": {
                "chains_with_key": ", ".join(sorted(self.explorer.api_keys)) or "(not set)",
                "calls_per_minute": str(self.explorer.calls_per_minute),
            },
            "coingecko": {
                "base_url": self.coingecko.base_url,
                "api_key": "(set)" if self.coingecko.api_key else "(not set)",
                "markets_batch_size": str(self.coingecko.markets_batch_size),
            },
            "discovery": {
                "catalog_path": str(self.discovery.catalog_path),
                "output_path": str(self.discovery.output_path),
                "min_market_cap": str(self.discovery.min_market_cap),
                "min_missing_value": str(self.discovery.min_missing_value),
                "indexer_id": self.discovery.indexer_id,
                "chains": ", ".join(self.discovery.chains) if self.discovery.chains else "(all)",
            },
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: Literal["discover", "init-db", "show-config"]) -> None:
        """Validate command-specific requirements.

        A command refuses to run when a capability it needs is not configured.
        """
        if command == "discover" and not self.chain.rpc_urls:
            raise ValueError("CHAIN_RPC_URLS is required for discovery")

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
    """Clear the settings cache (tests reload settings with different environments)."""
    get_settings.cache_clear()
