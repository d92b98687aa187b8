"""
Centralized configuration management for orgaccess.

This module provides a Pydantic Settings-based configuration system that:
- Validates environment variables at startup
- Groups related settings (store, invitations, logging)
- Supports .env file loading

All variables are read with the ``ORGACCESS_`` prefix, e.g.
``ORGACCESS_STORE_BACKEND=redis`` or ``ORGACCESS_LOG_LEVEL=DEBUG``.

Usage:
    from orgaccess.config import get_settings

    settings = get_settings()
    if settings.store.is_redis:
        ...
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# Store Settings
# =============================================================================


class StoreSettings(BaseSettings):
    """Configuration for the document store backing the engine."""

    model_config = SettingsConfigDict(
        env_prefix="ORGACCESS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    store_backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Document store implementation to use",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL (redis backend only)",
    )
    redis_key_prefix: str = Field(
        default="orgaccess:",
        description="Prefix applied to every Redis key written by the store",
    )
    redis_socket_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Socket connect/read timeout in seconds",
    )

    @property
    def is_redis(self) -> bool:
        """Check if the Redis backend is selected."""
        return self.store_backend == "redis"


# =============================================================================
# Invitation Settings
# =============================================================================


class InvitationSettings(BaseSettings):
    """Configuration for invitation lifetimes."""

    model_config = SettingsConfigDict(
        env_prefix="ORGACCESS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    invitation_expiry_hours: int = Field(
        default=72,
        ge=1,
        le=24 * 90,
        description="Default invitation lifetime in hours",
    )


# =============================================================================
# Logging Settings
# =============================================================================


class LoggingSettings(BaseSettings):
    """Configuration for structured logging."""

    model_config = SettingsConfigDict(
        env_prefix="ORGACCESS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = Field(
        default="INFO",
        description="Root log level",
    )
    log_format_json: bool = Field(
        default=False,
        description="Force JSON log output outside production",
    )
    service_name: str = Field(
        default="orgaccess",
        description="Service name attached to JSON log lines",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate the log level name."""
        v = v.upper().strip()
        if v not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return v


# =============================================================================
# Main Settings
# =============================================================================


class Settings(BaseSettings):
    """
    Main application settings.

    Combines the grouped settings objects and exposes the environment.
    """

    model_config = SettingsConfigDict(
        env_prefix="ORGACCESS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: Literal["development", "staging", "production", "test"] = Field(
        default="development",
        description="Deployment environment",
    )

    store: StoreSettings = Field(default_factory=StoreSettings)
    invitations: InvitationSettings = Field(default_factory=InvitationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload settings.

    Returns:
        Validated Settings instance

    Raises:
        ValidationError: If configuration is invalid
    """
    return Settings()


def reload_settings() -> Settings:
    """Clear the cache and return freshly loaded settings."""
    get_settings.cache_clear()
    return get_settings()
