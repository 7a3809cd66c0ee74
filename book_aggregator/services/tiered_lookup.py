"""Tiered read path: memory, Redis, relational store, then providers."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Mapping, Optional, Set

from book_aggregator import logging_manager as log_mgr
from book_aggregator import observability
from book_aggregator.cache.keys import book_key, search_key
from book_aggregator.cache.memory import MemoryCache
from book_aggregator.cache.remote import DocumentCache
from book_aggregator.catalog.errors import (
    BookAggregatorError,
    InvalidLookupError,
    MissingIdentifierError,
    TransientIOError,
)
from book_aggregator.catalog.identifiers import IdentifierKind, parse_lookup_identifier
from book_aggregator.catalog.ingest import IngestService
from book_aggregator.catalog.repository import CanonicalRepository
from book_aggregator.catalog.types import CanonicalRecord, LookupResult, SearchPage
from book_aggregator.config_manager import AggregatorSettings, get_settings
from book_aggregator.providers.base import ProviderPayload, ProviderQuery, SearchRequest
from book_aggregator.providers.registry import ProviderRegistry
from book_aggregator.resilience.circuit_breaker import CircuitBreaker
from book_aggregator.resilience.retry import RetryPolicy

logger = log_mgr.get_logger().getChild("services.tiered_lookup")

TIER_MEMORY = "memory"
TIER_REMOTE = "remote"
TIER_DATABASE = "database"
TIER_PROVIDER = "provider"

_ALIAS_PREFIX = "alias:"


class TierLookupCoordinator:
    """Serve canonical records from the cheapest tier that has them.

    Tier order is in-process memory, the shared Redis document cache, the
    relational canonical store and finally the external providers. A hit at
    a slower tier back-fills every faster tier; the Redis back-fill runs as a
    background task whose failures are only logged. Failures and timeouts of
    any tier degrade to a miss; only a malformed identifier raises.
    """

    def __init__(
        self,
        *,
        repository: CanonicalRepository,
        ingest: IngestService,
        providers: ProviderRegistry,
        memory: Optional[MemoryCache[Any]] = None,
        remote: Optional[DocumentCache] = None,
        settings: Optional[AggregatorSettings] = None,
        provider_retry: Optional[RetryPolicy] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository
        self._ingest = ingest
        self._providers = providers
        if memory is None:
            memory = MemoryCache(
                self._settings.memory_cache_capacity, self._settings.memory_cache_ttl_seconds
            )
        self._memory = memory
        self._remote = remote
        self._provider_retry = provider_retry or RetryPolicy(
            max_attempts=self._settings.lookup_retry_attempts,
            initial_delay=self._settings.lookup_retry_initial_delay,
            retry_on=(TransientIOError, asyncio.TimeoutError),
            breaker=CircuitBreaker(
                self._settings.lookup_breaker_threshold,
                self._settings.lookup_breaker_reset_seconds,
                name="providers",
            ),
        )
        self._background: Set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_by_id(self, identifier: str) -> Optional[LookupResult]:
        """Return the record for a canonical id, ISBN or provider volume id."""

        try:
            kind, value = parse_lookup_identifier(identifier)
        except ValueError as exc:
            raise InvalidLookupError(str(exc)) from exc

        record_id: Optional[str] = value if kind is IdentifierKind.CANONICAL else None
        if record_id is None:
            record_id = await self._resolve_alias(kind, value)

        if record_id is not None:
            result = await self._check_cached_tiers(record_id)
            if result is not None:
                return result
            if kind is IdentifierKind.CANONICAL:
                return None

        return await self._fetch_from_providers(kind, value)

    async def search(
        self,
        query: str,
        *,
        page: SearchPage = SearchPage(),
        filters: Optional[Mapping[str, Any]] = None,
        sort: Optional[str] = None,
    ) -> List[CanonicalRecord]:
        """Run a search, caching only the ordered list of canonical ids."""

        if not query or not query.strip():
            return []
        key = search_key(query, page, filters, sort)

        ids = await self._cached_search_ids(key)
        if ids is None:
            ids = await self._search_providers(SearchRequest(query, page, dict(filters or {}), sort))
            if ids is None:
                return []
            self._memory.set(key, tuple(ids))
            self._spawn(
                self._remote_set(key, list(ids), self._settings.search_cache_ttl_seconds)
            )

        results = await asyncio.gather(*(self._check_cached_tiers(record_id) for record_id in ids))
        return [result.record for result in results if result is not None]

    async def invalidate(self, record_id: str) -> None:
        """Drop a record from the cache tiers so the next read reloads it."""

        self._memory.delete(book_key(record_id))
        if self._remote is not None:
            try:
                await self._remote.delete(book_key(record_id))
            except BookAggregatorError as exc:
                self._log_tier_failure(TIER_REMOTE, record_id, exc)

    async def drain(self) -> None:
        """Wait for all pending background back-fills."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Tier checks
    # ------------------------------------------------------------------

    async def _check_cached_tiers(self, record_id: str) -> Optional[LookupResult]:
        with observability.lookup_tier(TIER_MEMORY):
            cached = self._memory.get(book_key(record_id))
        if cached is not None:
            return LookupResult(CanonicalRecord.from_dict(cached), TIER_MEMORY)

        record = await self._remote_get_record(record_id)
        if record is not None:
            self._remember(record)
            return LookupResult(record, TIER_REMOTE)

        record = await self._database_get(record_id)
        if record is not None:
            self._remember(record, backfill_remote=True)
            return LookupResult(record, TIER_DATABASE)
        return None

    async def _remote_get_record(self, record_id: str) -> Optional[CanonicalRecord]:
        if self._remote is None:
            return None
        try:
            with observability.lookup_tier(TIER_REMOTE):
                payload = await asyncio.wait_for(
                    self._remote.get(book_key(record_id)),
                    self._settings.remote_cache_timeout_seconds,
                )
            if not isinstance(payload, Mapping):
                return None
            return CanonicalRecord.from_dict(payload)
        except (BookAggregatorError, asyncio.TimeoutError, ValueError, TypeError) as exc:
            self._log_tier_failure(TIER_REMOTE, record_id, exc)
            return None

    async def _database_get(self, record_id: str) -> Optional[CanonicalRecord]:
        try:
            with observability.lookup_tier(TIER_DATABASE):
                return await asyncio.wait_for(
                    asyncio.to_thread(self._repository.get, record_id),
                    self._settings.database_timeout_seconds,
                )
        except (BookAggregatorError, asyncio.TimeoutError, ValueError, TypeError) as exc:
            # A row whose payload no longer fits the record shape counts as a miss.
            self._log_tier_failure(TIER_DATABASE, record_id, exc)
            return None

    async def _resolve_alias(self, kind: IdentifierKind, value: str) -> Optional[str]:
        alias = f"{_ALIAS_PREFIX}{kind.value}:{value}"
        cached = self._memory.get(alias)
        if cached is not None:
            return cached

        resolver = self._ingest.resolver
        kwargs: Dict[str, str] = {}
        if kind is IdentifierKind.ISBN13:
            kwargs["isbn13"] = value
        elif kind is IdentifierKind.ISBN10:
            kwargs["isbn10"] = value
        else:
            kwargs["provider_id"] = value
        try:
            record_id = await asyncio.wait_for(
                asyncio.to_thread(lambda: resolver.resolve(**kwargs)),
                self._settings.database_timeout_seconds,
            )
        except (BookAggregatorError, asyncio.TimeoutError) as exc:
            self._log_tier_failure(TIER_DATABASE, value, exc)
            return None
        if record_id:
            self._memory.set(alias, record_id)
        return record_id

    async def _fetch_from_providers(self, kind: IdentifierKind, value: str) -> Optional[LookupResult]:
        query = ProviderQuery(
            isbn13=value if kind is IdentifierKind.ISBN13 else None,
            isbn10=value if kind is IdentifierKind.ISBN10 else None,
            provider_id=value if kind is IdentifierKind.PROVIDER else None,
        )
        try:
            with observability.lookup_tier(TIER_PROVIDER):
                payloads: List[ProviderPayload] = await self._provider_retry.acall(
                    lambda: asyncio.wait_for(
                        asyncio.to_thread(self._providers.lookup, query),
                        self._settings.provider_deadline_seconds,
                    ),
                    operation="provider_lookup",
                    key=value,
                )
        except BookAggregatorError as exc:
            self._log_tier_failure(TIER_PROVIDER, value, exc)
            return None
        if not payloads:
            return None

        records = await self._ingest_payloads(payloads)
        if not records:
            return None
        record = records[0]
        self._memory.set(f"{_ALIAS_PREFIX}{kind.value}:{value}", record.id)
        return LookupResult(record, TIER_PROVIDER)

    async def _search_providers(self, request: SearchRequest) -> Optional[List[str]]:
        try:
            payloads: List[ProviderPayload] = await self._provider_retry.acall(
                lambda: asyncio.wait_for(
                    asyncio.to_thread(self._providers.search, request),
                    self._settings.provider_deadline_seconds,
                ),
                operation="provider_search",
                key=request.query,
            )
        except BookAggregatorError as exc:
            self._log_tier_failure(TIER_PROVIDER, request.query, exc)
            return None
        records = await self._ingest_payloads(payloads)
        return list(dict.fromkeys(record.id for record in records))

    async def _cached_search_ids(self, key: str) -> Optional[List[str]]:
        cached = self._memory.get(key)
        if cached is not None:
            return list(cached)
        if self._remote is None:
            return None
        try:
            payload = await asyncio.wait_for(
                self._remote.get(key), self._settings.remote_cache_timeout_seconds
            )
        except (BookAggregatorError, asyncio.TimeoutError) as exc:
            self._log_tier_failure(TIER_REMOTE, key, exc)
            return None
        if not isinstance(payload, list):
            return None
        ids = [str(item) for item in payload]
        self._memory.set(key, tuple(ids))
        return ids

    async def _ingest_payloads(self, payloads: List[ProviderPayload]) -> List[CanonicalRecord]:
        """Persist provider payloads (tier 3) and back-fill tiers 2 and 1."""

        records: List[CanonicalRecord] = []
        for item in payloads:
            try:
                results = await asyncio.to_thread(
                    self._ingest.ingest_payload, item.payload, source_key=item.source_key
                )
            except MissingIdentifierError as exc:
                logger.info(
                    "Skipping provider payload without identifiers",
                    extra={
                        "event": "lookup.ingest.skipped",
                        "object_key": item.source_key,
                        "error": str(exc),
                    },
                )
                continue
            except BookAggregatorError as exc:
                self._log_tier_failure(TIER_DATABASE, item.source_key, exc)
                continue
            for result in results:
                self._remember(result.record, backfill_remote=True)
                records.append(result.record.copy())
        return records

    # ------------------------------------------------------------------
    # Background back-fill
    # ------------------------------------------------------------------

    def _remember(self, record: CanonicalRecord, *, backfill_remote: bool = False) -> None:
        # Tiers hold serialized snapshots, so records handed to callers are theirs to mutate.
        snapshot = record.to_dict()
        self._memory.set(book_key(record.id), snapshot)
        if backfill_remote:
            self._spawn(
                self._remote_set(book_key(record.id), snapshot, self._settings.remote_cache_ttl_seconds)
            )

    async def _remote_set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if self._remote is None:
            return
        try:
            await asyncio.wait_for(
                self._remote.set(key, value, ttl_seconds=ttl_seconds),
                self._settings.remote_cache_timeout_seconds,
            )
        except (BookAggregatorError, asyncio.TimeoutError) as exc:
            self._log_tier_failure(TIER_REMOTE, key, exc)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    def _log_tier_failure(tier: str, key: Optional[str], exc: BaseException) -> None:
        logger.warning(
            "Lookup tier %s failed for %s: %s",
            tier,
            key,
            str(exc) or type(exc).__name__,
            extra={"event": "lookup.tier_failed", "tier": tier, "error_type": type(exc).__name__},
        )


__all__ = [
    "TIER_DATABASE",
    "TIER_MEMORY",
    "TIER_PROVIDER",
    "TIER_REMOTE",
    "TierLookupCoordinator",
]
