"""Engine settings, read from AUTOMATIONS_* environment variables or a .env file."""

import logging
from datetime import timedelta
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from engine.retry import RetryPolicy

logger = logging.getLogger(__name__)


class EngineSettings(BaseSettings):
    """Settings for the scheduler, retries and outbound calls.

    Priority chain: init kwargs > env vars > .env file > defaults
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTOMATIONS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str | None = Field(None, description="SQLAlchemy URL; in-memory storage when unset")

    # Scheduler
    poll_interval_seconds: float = Field(30.0, gt=0)
    worker_count: int = Field(4, ge=1)
    lease_ttl_seconds: int = Field(300, ge=1, description="Lease on an enrollment while one step runs")
    batch_size: int = Field(100, ge=1, description="Enrollments selected per tick")

    # Retries for send_email and webhook steps
    retry_max_retries: int = Field(3, ge=0, description="Retries after the first attempt")
    retry_base_delay: float = Field(1.0, ge=0)
    retry_max_delay: float = Field(30.0, ge=0)

    # Outbound calls
    network_timeout_seconds: float = Field(30.0, gt=0)
    webhook_secret: str | None = Field(None, description="HMAC key for signing webhook payloads")

    log_level: str = "INFO"
    log_format: Literal["text", "json"] = "text"

    @field_validator("log_level")
    @classmethod
    def normalise_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {value}")
        return level

    @model_validator(mode="after")
    def lease_outlasts_retries(self) -> "EngineSettings":
        worst_case = self.retry_policy().worst_case_seconds(self.network_timeout_seconds)
        if self.lease_ttl_seconds <= worst_case:
            raise ValueError(
                f"lease_ttl_seconds ({self.lease_ttl_seconds}) must exceed the worst-case retry time "
                f"of one step ({worst_case:.1f}s)"
            )
        return self

    @property
    def lease_ttl(self) -> timedelta:
        return timedelta(seconds=self.lease_ttl_seconds)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.retry_max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )


@lru_cache
def get_settings() -> EngineSettings:
    """Get cached settings instance."""
    settings = EngineSettings()
    if settings.webhook_secret is None:
        logger.warning("AUTOMATIONS_WEBHOOK_SECRET is not set; webhook steps will fail")
    return settings
