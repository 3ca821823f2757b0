"""Offline queue configuration settings."""

from functools import lru_cache
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Queue settings loaded from environment variables (``OFFLINE_QUEUE_*``)."""

    model_config = SettingsConfigDict(
        env_prefix="OFFLINE_QUEUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Offline Mutation Queue"
    debug: bool = False

    # Logging (unset falls back to LOG_LEVEL / LOG_FORMAT)
    log_level: str | None = None
    log_format: Literal["json", "text"] | None = None

    # Storage
    storage_backend: Literal["file", "redis", "memory"] = "file"
    queue_path: str = "data/offline_queue.json"
    redis_url: str = "redis://localhost:6379/0"
    redis_key: str = "offline_queue:document"
    storage_quota_bytes: int = 5 * 1024 * 1024
    hard_cap: int = 500
    retention_seconds: float = 24 * 60 * 60
    success_retention_seconds: float = 0.0

    # Remote authority
    remote_base_url: str = "http://localhost:8000"
    remote_token: str = ""
    remote_timeout: float = 30.0  # seconds per apply attempt

    # Retry / dispatch
    max_retries: int = 5
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 60.0
    parallelism: int = 10
    max_conflict_resubmits: int = 3

    # Notifications
    status_debounce_seconds: float = 0.25
    conflict_log_capacity: int = 1000

    # Connectivity probe (disabled when no URL is set)
    connectivity_url: str | None = None
    connectivity_interval: float = 30.0
    connectivity_timeout: float = 5.0

    @field_validator("max_retries", "max_conflict_resubmits")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be zero or greater")
        return v

    @field_validator("parallelism", "hard_cap", "conflict_log_capacity")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("backoff_max_seconds")
    @classmethod
    def validate_backoff_cap(cls, v: float) -> float:
        # Backoff is never allowed to exceed one minute.
        if v > 60.0:
            raise ValueError("backoff_max_seconds cannot exceed 60 seconds")
        return v

    @model_validator(mode="after")
    def validate_backoff_order(self) -> "Settings":
        if self.backoff_base_seconds <= 0:
            raise ValueError("backoff_base_seconds must be positive")
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
