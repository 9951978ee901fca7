"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
Variables use the ``DUNNING_`` prefix; nested groups use a double underscore,
for example ``DUNNING_SCHEDULER__BATCH_SIZE=100``.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DunningSettings(BaseSettings):
    """Dunning service settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_prefix="DUNNING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Sequence selection and step timing
    default_sequence: str = Field("standard-saas", description="Default dunning sequence ID")
    timezone: str = Field("UTC", description="Timezone used to pin step hours")

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or console)")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Scheduled step processing
    # ============================================================

    class SchedulerSettings(BaseModel):
        """Scheduled-step runner configuration."""

        batch_size: int = Field(50, ge=1, description="Max steps processed per pass")
        max_concurrent: int = Field(5, ge=1, description="Max steps executed concurrently")

    scheduler: SchedulerSettings = SchedulerSettings()  # type: ignore[call-arg]

    # ============================================================
    # Payment retry
    # ============================================================

    class RetrySettings(BaseModel):
        """Payment retry configuration."""

        max_session_retries: int = Field(
            10, ge=0, description="Max payment retries within one dunning process"
        )

    retry: RetrySettings = RetrySettings()  # type: ignore[call-arg]

    # ============================================================
    # Notification URLs
    # ============================================================

    class UrlSettings(BaseModel):
        """Links passed to notification templates."""

        update_payment: str | None = Field(None, description="Update payment method URL")
        view_invoice: str | None = Field(None, description="Invoice URL")
        support: str | None = Field(None, description="Support URL")

    urls: UrlSettings = UrlSettings()  # type: ignore[call-arg]

    # ============================================================
    # Database (SQL storage backend)
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str = Field("sqlite+aiosqlite:///./dunning.sqlite", description="Async database URL")
        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]


# Global settings instance
_settings: DunningSettings | None = None


def get_settings() -> DunningSettings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = DunningSettings()
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None
