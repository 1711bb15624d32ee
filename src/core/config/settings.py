# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Application configuration settings using Pydantic Settings.

This module provides centralized configuration management for the
student lifecycle service. Settings are loaded from environment variables
with sensible defaults.

The Settings class is the main entry point and aggregates all subsettings.
A singleton instance is provided via get_settings() for dependency injection.

Example:
    >>> from src.core.config.settings import get_settings
    >>> settings = get_settings()
    >>> print(settings.lifecycle.max_attempts)
    3
"""

from functools import lru_cache
from typing import Literal, Self

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerDatabaseSettings(BaseSettings):
    """Operation ledger database configuration.

    The ledger database is the durable record of every provisioning and
    retirement operation. It is the only shared mutable resource of the
    service, so it must be a real transactional database in production.

    Attributes:
        user: PostgreSQL username for the ledger database.
        password: PostgreSQL password for the ledger database.
        host: Database host address.
        port: Database port number.
        database: Database name.
        dsn: Full SQLAlchemy URL that overrides the component fields
            (e.g. ``sqlite+aiosqlite:///./ledger.db`` for local runs).
        pool_size: Connection pool size.
        max_overflow: Maximum overflow connections.
    """

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_DB_",
        extra="ignore",
    )

    user: str = "lifecycle"
    password: SecretStr = SecretStr("lifecycle_ledger_password")
    host: str = "lifecycle-ledger-db"
    port: int = 5432
    database: str = "lifecycle_ledger"
    dsn: str | None = None
    pool_size: int = 5
    max_overflow: int = 10

    @property
    def url(self) -> str:
        """Build the async database URL from components."""
        if self.dsn:
            return self.dsn
        pwd = self.password.get_secret_value()
        return f"postgresql+asyncpg://{self.user}:{pwd}@{self.host}:{self.port}/{self.database}"

    @property
    def is_sqlite(self) -> bool:
        """Check if the ledger is backed by SQLite."""
        return self.url.startswith("sqlite")


class FirebaseSettings(BaseSettings):
    """Hosted identity provider and document store configuration.

    The service account may be given as raw JSON or as base64-encoded
    JSON; some hosting platforms mangle raw JSON in environment variables.

    Attributes:
        service_account_json: Service account credentials.
        project_id: Firebase/GCP project identifier.
        app_name: Name of the firebase_admin app handle to create.
    """

    model_config = SettingsConfigDict(
        env_prefix="FIREBASE_",
        extra="ignore",
    )

    service_account_json: SecretStr | None = None
    project_id: str | None = None
    app_name: str = "student-lifecycle"


class LifecycleSettings(BaseSettings):
    """Lifecycle orchestration tuning.

    Attributes:
        step_timeout_seconds: Timeout applied to every external store call.
        max_attempts: Attempts per step before it is classified as failed.
        backoff_initial_seconds: First backoff delay between attempts.
        backoff_max_seconds: Upper bound for the backoff delay.
        claim_lease_seconds: How long a runner owns an operation.
        stale_after_minutes: Age after which a non-terminal entry is stale.
        scan_interval_minutes: How often the ledger scan job runs.
    """

    model_config = SettingsConfigDict(
        env_prefix="LIFECYCLE_",
        extra="ignore",
    )

    step_timeout_seconds: float = Field(default=10.0, gt=0)
    max_attempts: int = Field(default=3, ge=1)
    backoff_initial_seconds: float = Field(default=0.5, ge=0)
    backoff_max_seconds: float = Field(default=5.0, ge=0)
    claim_lease_seconds: int = Field(default=120, ge=1)
    stale_after_minutes: int = Field(default=30, ge=1)
    scan_interval_minutes: int = Field(default=15, ge=1)

    @property
    def step_budget_seconds(self) -> float:
        """Longest one step can run: every attempt times out, backoff maxed."""
        return (
            self.max_attempts * self.step_timeout_seconds
            + (self.max_attempts - 1) * self.backoff_max_seconds
        )

    @model_validator(mode="after")
    def validate_claim_lease(self) -> Self:
        """Require the claim to outlive the slowest possible step.

        The lease is renewed before every step, so it only has to cover
        one step plus the ledger writes around it.

        Raises:
            ValueError: If the lease is not longer than the step budget.
        """
        if self.claim_lease_seconds <= self.step_budget_seconds:
            raise ValueError(
                f"claim_lease_seconds ({self.claim_lease_seconds}) must exceed the "
                f"step budget of {self.step_budget_seconds:g}s"
            )
        return self


class CORSSettings(BaseSettings):
    """CORS configuration for the admin console.

    Attributes:
        origins: Comma-separated list of allowed origins.
        allow_credentials: Allow credentials in CORS requests.
        allow_methods: Allowed HTTP methods.
        allow_headers: Allowed HTTP headers.
    """

    model_config = SettingsConfigDict(
        env_prefix="CORS_",
        extra="ignore",
    )

    origins: str = "http://localhost:3000,http://localhost:9002"
    allow_credentials: bool = True
    allow_methods: list[str] = ["*"]
    allow_headers: list[str] = ["*"]

    @property
    def origins_list(self) -> list[str]:
        """Parse origins string into list."""
        return [origin.strip() for origin in self.origins.split(",") if origin.strip()]


class APISettings(BaseSettings):
    """API server configuration.

    Attributes:
        host: Server bind host.
        port: Server bind port.
        workers: Number of uvicorn workers.
    """

    model_config = SettingsConfigDict(
        env_prefix="API_",
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 8000
    workers: int = 1


class Settings(BaseSettings):
    """Main application settings aggregating all subsettings.

    Use get_settings() to obtain a cached singleton instance.

    Attributes:
        environment: Current environment (development, staging, production).
        debug: Enable debug mode.
        log_level: Logging level.
        ledger_db: Operation ledger database settings.
        firebase: Identity provider and document store settings.
        lifecycle: Orchestration tuning.
        cors: CORS settings.
        api: API server settings.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # Environment
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "DEBUG"

    # Subsettings - loaded with their own env prefixes
    ledger_db: LedgerDatabaseSettings = Field(default_factory=LedgerDatabaseSettings)
    firebase: FirebaseSettings = Field(default_factory=FirebaseSettings)
    lifecycle: LifecycleSettings = Field(default_factory=LifecycleSettings)
    cors: CORSSettings = Field(default_factory=CORSSettings)
    api: APISettings = Field(default_factory=APISettings)

    @model_validator(mode="after")
    def validate_production_settings(self) -> Self:
        """Validate that production settings are properly configured.

        Raises:
            ValueError: If running in production without credentials.
        """
        if self.environment == "production":
            if self.firebase.service_account_json is None:
                raise ValueError(
                    "Firebase service account must be configured in production. "
                    "Set FIREBASE_SERVICE_ACCOUNT_JSON environment variable."
                )
            if self.ledger_db.is_sqlite:
                raise ValueError(
                    "SQLite ledger is not supported in production. "
                    "Unset LEDGER_DB_DSN or point it at PostgreSQL."
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
    Useful for testing or dynamic configuration updates.
    """
    get_settings.cache_clear()
