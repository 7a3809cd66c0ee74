"""Pydantic models and helper utilities for configuration values."""
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from book_aggregator import logging_manager

from .constants import (
    DEFAULT_ARCHIVE_PREFIX,
    DEFAULT_ARCHIVE_ROOT,
    DEFAULT_BATCH_SIZE,
    DEFAULT_BREAKER_RESET_SECONDS,
    DEFAULT_BREAKER_THRESHOLD,
    DEFAULT_DATABASE_URL,
    DEFAULT_MAX_WORKERS,
    DEFAULT_PROCESSED_FOLDER,
    DEFAULT_REDIS_URL,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_INITIAL_DELAY,
)

logger = logging_manager.get_logger().getChild("config")


class AggregatorSettings(BaseModel):
    """Typed representation of the application configuration."""

    model_config = ConfigDict(extra="ignore")

    database_url: SecretStr = SecretStr(DEFAULT_DATABASE_URL)
    database_pool_size: int = 10
    database_max_overflow: int = 5
    redis_url: Optional[SecretStr] = SecretStr(DEFAULT_REDIS_URL)

    google_books_api_key: Optional[SecretStr] = None
    google_books_base_url: str = "https://www.googleapis.com/books/v1"
    nyt_api_key: Optional[SecretStr] = None
    nyt_base_url: str = "https://api.nytimes.com/svc/books/v3"
    openlibrary_base_url: str = "https://openlibrary.org"
    provider_timeout_seconds: float = 10.0

    memory_cache_capacity: int = 1000
    memory_cache_ttl_seconds: float = 300.0
    remote_cache_ttl_seconds: int = 24 * 60 * 60
    search_cache_ttl_seconds: int = 60 * 60
    remote_cache_timeout_seconds: float = 0.5
    database_timeout_seconds: float = 2.0
    provider_deadline_seconds: float = 15.0
    lookup_retry_attempts: int = 2
    lookup_retry_initial_delay: float = 0.25
    lookup_breaker_threshold: int = 5
    lookup_breaker_reset_seconds: float = 30.0

    archive_root: str = DEFAULT_ARCHIVE_ROOT
    archive_prefix: str = DEFAULT_ARCHIVE_PREFIX
    processed_folder: str = DEFAULT_PROCESSED_FOLDER
    migration_batch_size: int = DEFAULT_BATCH_SIZE
    migration_max_workers: int = DEFAULT_MAX_WORKERS
    migration_page_size: int = 1000
    migration_file_timeout_seconds: float = 120.0
    migration_skip_files: int = 0
    migration_max_files: int = 0
    retry_max_attempts: int = DEFAULT_RETRY_ATTEMPTS
    retry_initial_delay_seconds: float = DEFAULT_RETRY_INITIAL_DELAY
    retry_max_delay_seconds: float = 30.0
    breaker_failure_threshold: int = DEFAULT_BREAKER_THRESHOLD
    breaker_reset_timeout_seconds: float = DEFAULT_BREAKER_RESET_SECONDS

    debug: bool = False

    @field_validator(
        "memory_cache_capacity",
        "migration_batch_size",
        "migration_max_workers",
        "migration_page_size",
        "retry_max_attempts",
        "lookup_retry_attempts",
        "breaker_failure_threshold",
        "lookup_breaker_threshold",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("migration_skip_files", "migration_max_files")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("archive_prefix", "processed_folder")
    @classmethod
    def _normalize_folder(cls, value: str) -> str:
        cleaned = value.strip().lstrip("/")
        if cleaned and not cleaned.endswith("/"):
            cleaned += "/"
        return cleaned

    def secret_value(self, name: str) -> Optional[str]:
        value = getattr(self, name)
        if isinstance(value, SecretStr):
            return value.get_secret_value() or None
        return value


class EnvironmentOverrides(BaseSettings):
    """Configuration overrides sourced from environment variables."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    database_url: Optional[SecretStr] = Field(
        default=None, validation_alias=AliasChoices("DATABASE_URL", "BOOK_AGGREGATOR_DATABASE_URL")
    )
    redis_url: Optional[SecretStr] = Field(
        default=None, validation_alias=AliasChoices("REDIS_URL", "BOOK_AGGREGATOR_REDIS_URL")
    )
    google_books_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("GOOGLE_BOOKS_API_KEY", "BOOK_AGGREGATOR_GOOGLE_BOOKS_API_KEY"),
    )
    nyt_api_key: Optional[SecretStr] = Field(
        default=None, validation_alias=AliasChoices("NYT_API_KEY", "BOOK_AGGREGATOR_NYT_API_KEY")
    )
    archive_root: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("BOOK_AGGREGATOR_ARCHIVE_ROOT")
    )
    archive_prefix: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("BOOK_AGGREGATOR_ARCHIVE_PREFIX", "S3_JSON_PREFIX"),
    )
    migration_batch_size: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("BOOK_AGGREGATOR_BATCH_SIZE")
    )
    migration_max_workers: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("BOOK_AGGREGATOR_MAX_WORKERS")
    )
    memory_cache_capacity: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("BOOK_AGGREGATOR_MEMORY_CACHE_CAPACITY")
    )
    debug: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("BOOK_AGGREGATOR_DEBUG")
    )


def load_environment_overrides() -> Dict[str, Any]:
    """Return configuration overrides sourced from environment variables."""

    try:
        overrides = EnvironmentOverrides()
    except ValidationError as exc:
        logger.warning(
            "Invalid environment configuration detected; using defaults.",
            extra={
                "event": "config.env.validation_error",
                "error": str(exc),
                "console_suppress": True,
            },
        )
        return {}
    return overrides.model_dump(exclude_none=True)


def apply_settings_updates(
    settings: AggregatorSettings, updates: Dict[str, Any]
) -> AggregatorSettings:
    """Return a validated copy of ``settings`` with ``updates`` applied."""

    if not updates:
        return settings
    payload = settings.model_dump(mode="python")
    payload.update(updates)
    return AggregatorSettings.model_validate(payload)


__all__ = [
    "AggregatorSettings",
    "EnvironmentOverrides",
    "apply_settings_updates",
    "load_environment_overrides",
]
