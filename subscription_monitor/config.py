from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables with validation."""

    model_config = SettingsConfigDict(
        env_file=(str(Path(__file__).resolve().parents[1] / ".env"), ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    app_name: str = Field(default="Subscription Lifecycle Monitor", alias="APP_NAME")
    app_env: Literal["development", "staging", "production", "test"] = Field(
        default="production",
        alias="APP_ENV",
    )
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    api_v1_prefix: str = Field(default="/api/v1", alias="API_V1_PREFIX")
    secret_key: SecretStr = Field(
        default=SecretStr("change-me-in-production"),
        alias="SECRET_KEY",
    )

    database_url: str = Field(
        default="sqlite:///./subscription_monitor.db",
        alias="DATABASE_URL",
    )

    subscription_backend: Literal["sql", "supabase"] = Field(
        default="sql",
        alias="SUBSCRIPTION_BACKEND",
    )
    supabase_url: Optional[str] = Field(default=None, alias="SUPABASE_URL")
    supabase_service_key: SecretStr = Field(
        default=SecretStr(""),
        alias="SUPABASE_SERVICE_KEY",
    )
    supabase_timeout: float = Field(default=20.0, gt=0, alias="SUPABASE_TIMEOUT")

    # Comma-separated days before end_date, e.g. "7,3,1".
    reminder_thresholds_raw: str = Field(default="7,3,1", alias="REMINDER_THRESHOLDS")
    notification_window_days: int = Field(default=8, ge=1, alias="NOTIFICATION_WINDOW_DAYS")
    catch_up_delay_seconds: int = Field(default=60, ge=1, le=3600, alias="CATCH_UP_DELAY_SECONDS")
    notification_storage_key: str = Field(
        default="@subscription_notifications",
        alias="NOTIFICATION_STORAGE_KEY",
    )
    session_storage_key: str = Field(default="@auth_session", alias="SESSION_STORAGE_KEY")

    background_minimum_interval_seconds: int = Field(
        default=60 * 60,
        ge=60,
        alias="BACKGROUND_MINIMUM_INTERVAL_SECONDS",
    )
    background_schedule_cron: Optional[str] = Field(default=None, alias="BACKGROUND_SCHEDULE_CRON")
    background_retry_delay_seconds: int = Field(
        default=60,
        ge=1,
        alias="BACKGROUND_RETRY_DELAY_SECONDS",
    )
    background_time_budget_seconds: float = Field(
        default=25.0,
        gt=0,
        le=600,
        alias="BACKGROUND_TIME_BUDGET_SECONDS",
    )
    background_start_on_boot: bool = Field(default=True, alias="BACKGROUND_START_ON_BOOT")

    @field_validator("api_v1_prefix")
    @classmethod
    def validate_api_prefix(cls, value: str) -> str:
        """Ensure the API prefix starts with a slash and has no trailing slash."""
        normalized = value.strip()
        if not normalized.startswith("/"):
            raise ValueError("API_V1_PREFIX must start with '/'.")
        if len(normalized) > 1 and normalized.endswith("/"):
            normalized = normalized.rstrip("/")
        return normalized

    @field_validator("reminder_thresholds_raw")
    @classmethod
    def validate_reminder_thresholds(cls, value: str) -> str:
        """Thresholds must be a non-empty comma-separated list of positive integers."""
        try:
            days = [int(part.strip()) for part in value.split(",") if part.strip()]
        except ValueError as exc:
            raise ValueError("REMINDER_THRESHOLDS must be comma-separated integers.") from exc
        if not days:
            raise ValueError("REMINDER_THRESHOLDS must name at least one threshold.")
        if any(d <= 0 for d in days):
            raise ValueError("REMINDER_THRESHOLDS must be positive day counts.")
        return ",".join(str(d) for d in sorted(set(days)))

    @property
    def reminder_thresholds(self) -> tuple[int, ...]:
        """Threshold Set in ascending order."""
        return tuple(int(part) for part in self.reminder_thresholds_raw.split(","))

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, value: str) -> str:
        """Validate database URL is a SQLite or PostgreSQL SQLAlchemy connection string."""
        lowered = value.lower()
        if not lowered.startswith(("sqlite://", "postgresql://", "postgresql+psycopg2://")):
            raise ValueError("DATABASE_URL must be a sqlite:// or postgresql:// URL")
        return value

    @model_validator(mode="after")
    def validate_window(self) -> "Settings":
        if self.notification_window_days < max(self.reminder_thresholds):
            raise ValueError("NOTIFICATION_WINDOW_DAYS must cover the largest reminder threshold.")
        if self.subscription_backend == "supabase" and not self.supabase_url:
            raise ValueError("SUPABASE_URL is required when SUBSCRIPTION_BACKEND=supabase.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""
    return Settings()


settings: Settings = get_settings()
