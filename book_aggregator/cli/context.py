"""Wiring of repositories, caches and providers for CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .. import logging_manager as log_mgr
from ..cache import MemoryCache, RedisDocumentCache
from ..catalog import IngestService, SqlAlchemyCanonicalRepository
from ..catalog.errors import PersistenceError, TransientIOError
from ..config_manager import AggregatorSettings, load_settings
from ..database import get_session_factory
from ..providers import ProviderRegistry
from ..resilience import RetryPolicy
from ..services import TierLookupCoordinator

logger = log_mgr.get_logger().getChild("cli.context")


def settings_from_args(args: Any) -> AggregatorSettings:
    """Load settings from ``--config`` and apply the command line overrides."""

    overrides: Dict[str, Any] = {}
    mapping = {
        "database_url": "database_url",
        "archive_root": "archive_root",
        "prefix": "archive_prefix",
        "batch_size": "migration_batch_size",
        "max_workers": "migration_max_workers",
        "skip_files": "migration_skip_files",
        "max_files": "migration_max_files",
    }
    for attribute, setting in mapping.items():
        value = getattr(args, attribute, None)
        if value is not None:
            overrides[setting] = value
    if getattr(args, "debug", False):
        overrides["debug"] = True

    settings = load_settings(getattr(args, "config", None), overrides=overrides)
    log_mgr.configure_logging_level(debug_enabled=settings.debug)
    return settings


def persistence_retry(settings: AggregatorSettings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        initial_delay=settings.retry_initial_delay_seconds,
        max_delay=settings.retry_max_delay_seconds,
        retry_on=(PersistenceError, TransientIOError),
    )


@dataclass
class AggregatorRuntime:
    """Long-lived collaborators shared by the commands of one process."""

    settings: AggregatorSettings
    repository: SqlAlchemyCanonicalRepository
    ingest: IngestService
    providers: ProviderRegistry
    remote: Optional[RedisDocumentCache] = None

    @classmethod
    def build(cls, settings: AggregatorSettings, *, use_remote_cache: bool = True) -> "AggregatorRuntime":
        repository = SqlAlchemyCanonicalRepository(get_session_factory())
        ingest = IngestService(repository, persistence_retry=persistence_retry(settings))
        remote = None
        redis_url = settings.secret_value("redis_url")
        if use_remote_cache and redis_url:
            remote = RedisDocumentCache.from_url(redis_url)
        return cls(
            settings=settings,
            repository=repository,
            ingest=ingest,
            providers=ProviderRegistry.from_settings(settings),
            remote=remote,
        )

    def coordinator(self) -> TierLookupCoordinator:
        return TierLookupCoordinator(
            repository=self.repository,
            ingest=self.ingest,
            providers=self.providers,
            memory=MemoryCache(
                self.settings.memory_cache_capacity, self.settings.memory_cache_ttl_seconds
            ),
            remote=self.remote,
            settings=self.settings,
        )

    async def aclose(self) -> None:
        if self.remote is not None:
            await self.remote.close()
        self.providers.close()


__all__ = ["AggregatorRuntime", "persistence_retry", "settings_from_args"]
