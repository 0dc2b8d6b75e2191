"""Configuration management service with Pydantic Settings.

This module provides centralized configuration for the contract alarm
service, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="")

    url: str = Field(
        default="sqlite+aiosqlite:///./contract_alarms.db",
        alias="DATABASE_URL",
        description="Async SQLAlchemy connection string",
    )
    echo: bool = Field(
        default=False,
        alias="DATABASE_ECHO",
        description="Log every SQL statement",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError(
                "DATABASE_URL must use postgresql+asyncpg:// or sqlite+aiosqlite://"
            )
        return v


class ChainSettings(BaseSettings):
    """Blockchain RPC and finality settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_")

    rpc_url: str = Field(
        default="http://localhost:8545",
        alias="CHAIN_RPC_URL",
        description="JSON-RPC endpoint used to read blocks and logs",
    )
    reorg_safety: int = Field(
        default=12,
        alias="REORG_SAFETY",
        description="Blocks to wait before a block is treated as final",
        ge=0,
    )
    start_block: int = Field(
        default=0,
        alias="CHAIN_START_BLOCK",
        description="First block scanned for alarms without a sync state",
        ge=0,
    )
    max_block_range: int = Field(
        default=2000,
        alias="CHAIN_MAX_BLOCK_RANGE",
        description="Largest block span requested in one eth_getLogs call",
        ge=1,
    )

    @field_validator("rpc_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate RPC URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class EtherscanSettings(BaseSettings):
    """ABI lookup settings."""

    model_config = SettingsConfigDict(env_prefix="ETHERSCAN_")

    api_url: str = Field(
        default="https://api.etherscan.io/api",
        alias="ETHERSCAN_API_URL",
        description="Etherscan-compatible API endpoint",
    )
    api_key: SecretStr | None = Field(
        default=None,
        alias="ETHERSCAN_API_KEY",
        description="Optional Etherscan API key",
    )


class SmtpSettings(BaseSettings):
    """Email notification settings."""

    model_config = SettingsConfigDict(env_prefix="SMTP_")

    host: str | None = Field(
        default=None,
        alias="SMTP_HOST",
        description="SMTP server host",
    )
    port: int = Field(
        default=587,
        alias="SMTP_PORT",
        description="SMTP server port",
        ge=1,
        le=65535,
    )
    username: str | None = Field(default=None, alias="SMTP_USERNAME")
    password: SecretStr | None = Field(default=None, alias="SMTP_PASSWORD")
    sender: str = Field(
        default="alarms@localhost",
        alias="SMTP_SENDER",
        description="From address on notification emails",
    )
    use_tls: bool = Field(default=True, alias="SMTP_USE_TLS")

    @property
    def enabled(self) -> bool:
        """Check if email notifications are enabled."""
        return self.host is not None


class WebhookSettings(BaseSettings):
    """Webhook notification settings."""

    model_config = SettingsConfigDict(env_prefix="WEBHOOK_")

    timeout: float = Field(
        default=10.0,
        alias="WEBHOOK_TIMEOUT",
        description="HTTP request timeout in seconds",
        gt=0,
    )
    max_retries: int = Field(
        default=3,
        alias="WEBHOOK_MAX_RETRIES",
        description="Delivery attempts per notification",
        ge=1,
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from contract_alarms.config import get_settings

        settings = get_settings()
        print(settings.chain.reorg_safety)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    chain: ChainSettings = Field(default_factory=ChainSettings)
    etherscan: EtherscanSettings = Field(default_factory=EtherscanSettings)
    smtp: SmtpSettings = Field(default_factory=SmtpSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    poll_interval: float = Field(
        default=15.0,
        alias="POLL_INTERVAL",
        description="Seconds between reconciliation passes",
        gt=0,
    )
    dispatch_timeout: float = Field(
        default=30.0,
        alias="DISPATCH_TIMEOUT",
        description="Upper bound in seconds for one notification delivery",
        gt=0,
    )
    max_concurrency: int = Field(
        default=8,
        alias="MAX_CONCURRENCY",
        description="Dispatch units processed in parallel",
        ge=1,
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Run without sending notifications",
    )

    def get_reorg_safety(self) -> int:
        """Number of blocks to wait before trusting finality."""
        return self.chain.reorg_safety

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
            "rpc_url": self._redact_url(self.chain.rpc_url),
            "reorg_safety": str(self.chain.reorg_safety),
            "start_block": str(self.chain.start_block),
            "etherscan": {
                "api_url": self.etherscan.api_url,
                "api_key": "(set)" if self.etherscan.api_key else "(not set)",
            },
            "email_enabled": str(self.smtp.enabled),
            "log_level": self.log_level,
            "poll_interval": str(self.poll_interval),
            "dry_run": str(self.dry_run),
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
