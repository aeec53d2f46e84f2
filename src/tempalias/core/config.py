"""Configuration management for tempalias.

This module provides centralized configuration using Pydantic Settings,
supporting environment-based configuration (dev, staging, production).

All configuration is loaded from environment variables with the TEMPALIAS_ prefix.
Nested settings use double underscore as delimiter (e.g., TEMPALIAS_PROVIDER__API_KEY).

Example:
    export TEMPALIAS_ENVIRONMENT=dev
    export TEMPALIAS_PROVIDER__API_KEY=sk_live_xxx
    export TEMPALIAS_LIFECYCLE__POLL_INTERVAL_SECONDS=40
"""

from __future__ import annotations

import logging
from enum import Enum
from functools import cached_property
from typing import Annotated, Any, Self

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_URL = "https://api.improvmx.com/v3"


class Environment(str, Enum):
    """Deployment environment.

    Affects validation strictness. Production has additional constraints.
    """

    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class ProviderSettings(BaseSettings):
    """Mail-forwarding provider API settings.

    The API key is an opaque credential; it is passed through to the
    provider unchanged and never inspected beyond presence.
    """

    model_config = SettingsConfigDict(
        env_prefix="TEMPALIAS_PROVIDER__",
        extra="ignore",
    )

    base_url: str = Field(
        default=DEFAULT_PROVIDER_URL,
        description="Base URL of the provider REST API",
    )
    api_key: SecretStr | None = Field(
        default=None,
        description="Provider API key (optional, can be supplied at login)",
    )
    timeout: Annotated[float, Field(gt=0, le=300)] = Field(
        default=30.0,
        description="HTTP request timeout in seconds",
    )

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the base URL so endpoint paths can be appended."""
        if not v:
            msg = "Provider base_url cannot be empty"
            raise ValueError(msg)
        return v.rstrip("/")


class LifecycleSettings(BaseSettings):
    """Timing parameters for the alias lifecycle engine."""

    model_config = SettingsConfigDict(
        env_prefix="TEMPALIAS_LIFECYCLE__",
        extra="ignore",
    )

    alias_ttl_seconds: Annotated[int, Field(ge=1)] = Field(
        default=240,
        description="Validity window of every created alias",
    )
    poll_interval_seconds: Annotated[float, Field(gt=0)] = Field(
        default=40.0,
        description="Seconds between automatic delivery-log polls",
    )
    status_refresh_seconds: Annotated[float, Field(gt=0)] = Field(
        default=1.0,
        description="Seconds between background status recomputations",
    )
    notification_duration_ms: Annotated[int, Field(ge=1)] = Field(
        default=5000,
        description="Default display lifetime of a notification",
    )
    notification_tick_seconds: Annotated[float, Field(gt=0)] = Field(
        default=0.1,
        description="Polling tick of the notification dispatch loop",
    )


class StoreSettings(BaseSettings):
    """Local persistent store settings."""

    model_config = SettingsConfigDict(
        env_prefix="TEMPALIAS_STORE__",
        extra="ignore",
    )

    url: str = Field(
        default="sqlite:///tempalias.db",
        description="SQLAlchemy URL of the local key-value store",
    )
    echo: bool = Field(
        default=False,
        description="Enable SQL statement logging (dev only)",
    )


class Settings(BaseSettings):
    """Main tempalias configuration container.

    Example environment variables:
        TEMPALIAS_ENVIRONMENT=production
        TEMPALIAS_DOMAIN=example.com
        TEMPALIAS_PROVIDER__API_KEY=sk_live_xxx
        TEMPALIAS_STORE__URL=sqlite:////var/lib/tempalias/state.db
    """

    model_config = SettingsConfigDict(
        env_prefix="TEMPALIAS_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_default=True,
    )

    environment: Environment = Field(
        default=Environment.DEV,
        description="Deployment environment (dev, staging, production)",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode (never in production)",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    domain: str | None = Field(
        default=None,
        description="Default provider domain used by the console entry point",
    )

    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    lifecycle: LifecycleSettings = Field(default_factory=LifecycleSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)

    app_name: str = Field(
        default="tempalias",
        description="Application name for logging",
    )
    app_version: str = Field(
        default="0.1.0",
        description="Application version",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Accept only names the logging module understands."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            msg = f"Unknown log level: {v}"
            raise ValueError(msg)
        return level

    @model_validator(mode="after")
    def validate_production_constraints(self) -> Self:
        """Enforce production environment constraints."""
        if self.environment == Environment.PRODUCTION:
            if self.debug:
                msg = "Debug mode is not allowed in production environment"
                raise ValueError(msg)
            if not self.provider.base_url.startswith("https://"):
                logger.warning(
                    "Provider API is configured without HTTPS in production. "
                    "The API key will be sent in clear text."
                )
        return self

    @cached_property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION

    def get_summary(self) -> dict[str, Any]:
        """Return non-sensitive configuration values for startup logging."""
        return {
            "environment": self.environment.value,
            "provider_url": self.provider.base_url,
            "api_key_set": self.provider.api_key is not None,
            "alias_ttl_seconds": self.lifecycle.alias_ttl_seconds,
            "poll_interval_seconds": self.lifecycle.poll_interval_seconds,
            "store_url": self.store.url,
            "app_version": self.app_version,
        }


class ConfigValidationError(Exception):
    """Raised when configuration validation fails.

    This exception should cause fast failure at startup to prevent
    running with invalid configuration.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        self.message = message
        self.field = field
        super().__init__(message)


def validate_settings(settings: Settings) -> None:
    """Perform additional runtime validation of settings.

    Args:
        settings: Settings instance to validate.

    Raises:
        ConfigValidationError: If validation fails.
    """
    if settings.is_production and (
        settings.provider.api_key is None or not settings.provider.api_key.get_secret_value()
    ):
        raise ConfigValidationError(
            "Provider API key is required in production. Set TEMPALIAS_PROVIDER__API_KEY.",
            field="provider.api_key",
        )

    if not settings.store.url:
        raise ConfigValidationError(
            "Store URL is required. Set TEMPALIAS_STORE__URL.",
            field="store.url",
        )

    logger.debug("Configuration validated: %s", settings.get_summary())
