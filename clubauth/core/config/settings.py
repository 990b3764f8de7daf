# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Application configuration settings using Pydantic Settings.

This module provides centralized configuration management for the
club management authentication core. Settings are loaded from environment
variables (and an optional ``.env`` file) with sensible defaults.

The Settings class is the main entry point and aggregates all subsettings.
A cached instance is provided via get_settings().

Example:
    >>> from clubauth.core.config.settings import get_settings
    >>> settings = get_settings()
    >>> print(settings.environment)
    'development'
"""

from functools import lru_cache
from typing import Literal, Self

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DB_PASSWORD = "cms_password"


class DatabaseSettings(BaseSettings):
    """PostgreSQL configuration for the club management database.

    All tenants (schools) share one database; isolation is enforced by
    row-level-security policies keyed on the connection's tenant setting.

    Attributes:
        user: PostgreSQL username.
        password: PostgreSQL password.
        host: Database host address.
        port: Database port number.
        database: Database name.
        pool_size: Connection pool size for short-lived lookups.
        max_overflow: Maximum overflow connections.
        pool_recycle: Seconds after which pooled connections are recycled.
        connect_timeout: Seconds to wait when opening a connection.
    """

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        extra="ignore",
    )

    user: str = "cms"
    password: SecretStr = SecretStr(DEFAULT_DB_PASSWORD)
    host: str = "localhost"
    port: int = 5432
    database: str = "club_management"
    pool_size: int = 10
    max_overflow: int = 5
    pool_recycle: int = 1800
    connect_timeout: int = 30

    @property
    def url(self) -> str:
        """Build the psycopg2 database URL from components."""
        pwd = self.password.get_secret_value()
        return f"postgresql+psycopg2://{self.user}:{pwd}@{self.host}:{self.port}/{self.database}"


class AuthSettings(BaseSettings):
    """Authentication and session configuration.

    Attributes:
        bcrypt_rounds: Cost factor for password hashing.
        login_timeout_ms: Statement timeout for the login transaction.
        activation_timeout_ms: Statement timeout for coordinator activation.
        reset_token_ttl_minutes: Lifetime of a password reset token.
        password_history_limit: Number of previous hashes a new password
            may not match.
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTH_",
        extra="ignore",
    )

    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    login_timeout_ms: int = Field(default=5000, gt=0)
    activation_timeout_ms: int = Field(default=5000, gt=0)
    reset_token_ttl_minutes: int = Field(default=60, gt=0)
    password_history_limit: int = Field(default=5, ge=1)


class WorkerSettings(BaseSettings):
    """Background worker configuration.

    Attributes:
        threads: Number of worker threads for blocking database calls.
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKER_",
        extra="ignore",
    )

    threads: int = Field(default=2, ge=1)


class Settings(BaseSettings):
    """Main application settings aggregating all subsettings.

    Use get_settings() to obtain a cached singleton instance.

    Attributes:
        environment: Current environment (development, staging, production).
        debug: Enable debug mode.
        log_level: Logging level.
        database: Database settings.
        auth: Authentication settings.
        worker: Background worker settings.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # Environment
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # Subsettings - loaded with their own env prefixes
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)

    @model_validator(mode="after")
    def validate_production_settings(self) -> Self:
        """Validate that production settings are properly configured.

        Raises:
            ValueError: If running in production with insecure defaults.
        """
        if self.environment == "production":
            if self.database.password.get_secret_value() == DEFAULT_DB_PASSWORD:
                raise ValueError(
                    "Database password must be changed from default in production. "
                    "Set DB_PASSWORD environment variable."
                )
            if self.auth.bcrypt_rounds < 10:
                raise ValueError(
                    "AUTH_BCRYPT_ROUNDS must be at least 10 in production."
                )
        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call clear_settings_cache() if you need to reload settings.

    Returns:
        Cached Settings instance.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Call this if you need to reload settings from environment.
    Useful for testing.
    """
    get_settings.cache_clear()
