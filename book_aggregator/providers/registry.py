"""Provider registry and fallback chain for identifier lookups."""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence

import requests

from book_aggregator import logging_manager as log_mgr
from book_aggregator.catalog.errors import TransientIOError
from book_aggregator.catalog.types import ProviderSource
from book_aggregator.config_manager import AggregatorSettings

from .base import BaseProviderClient, ProviderPayload, ProviderQuery, SearchRequest
from .google_books import GoogleBooksClient
from .nyt import NytBestsellerClient
from .openlibrary import OpenLibraryClient

logger = log_mgr.get_logger().getChild("providers.registry")

# Identifier lookups stop at the first provider that returns something.
DEFAULT_CHAIN: List[ProviderSource] = [
    ProviderSource.GOOGLE_BOOKS,
    ProviderSource.OPENLIBRARY,
]
SEARCH_SOURCE = ProviderSource.GOOGLE_BOOKS


class ProviderRegistry:
    """Owns provider clients and walks the fallback chain."""

    def __init__(
        self,
        clients: Optional[Dict[ProviderSource, BaseProviderClient]] = None,
        *,
        chain: Optional[Sequence[ProviderSource]] = None,
    ) -> None:
        self._clients: Dict[ProviderSource, BaseProviderClient] = dict(clients or {})
        self._chain = list(chain or DEFAULT_CHAIN)

    @classmethod
    def from_settings(
        cls,
        settings: AggregatorSettings,
        *,
        session: Optional[requests.Session] = None,
    ) -> "ProviderRegistry":
        timeout = settings.provider_timeout_seconds
        clients: Dict[ProviderSource, BaseProviderClient] = {
            ProviderSource.GOOGLE_BOOKS: GoogleBooksClient(
                session=session,
                api_key=settings.secret_value("google_books_api_key"),
                timeout_seconds=timeout,
                base_url=settings.google_books_base_url,
            ),
            ProviderSource.NYT: NytBestsellerClient(
                session=session,
                api_key=settings.secret_value("nyt_api_key"),
                timeout_seconds=timeout,
                base_url=settings.nyt_base_url,
            ),
            ProviderSource.OPENLIBRARY: OpenLibraryClient(
                session=session,
                timeout_seconds=timeout,
                base_url=settings.openlibrary_base_url,
            ),
        }
        return cls(clients)

    def get_client(self, source: ProviderSource) -> Optional[BaseProviderClient]:
        client = self._clients.get(source)
        if client is None or not client.is_available:
            return None
        return client

    def available_sources(self) -> List[ProviderSource]:
        return [source for source in self._chain if self.get_client(source) is not None]

    def lookup(self, query: ProviderQuery) -> List[ProviderPayload]:
        """Return payloads from the first provider in the chain that knows the book.

        A transient failure of one provider moves on to the next; if every
        provider failed transiently the last error is raised so callers can
        retry.
        """
        last_error: Optional[TransientIOError] = None
        for source in self.available_sources():
            client = self._clients[source]
            try:
                payloads = client.lookup(query)
            except TransientIOError as exc:
                last_error = exc
                logger.warning(
                    "Provider %s failed: %s",
                    source.value,
                    exc,
                    extra={"event": "providers.lookup_failed", "provider": source.value},
                )
                continue
            if payloads:
                return payloads
        if last_error is not None:
            raise last_error
        return []

    def search(self, request: SearchRequest) -> List[ProviderPayload]:
        client = self.get_client(SEARCH_SOURCE)
        if client is None:
            return []
        return client.search(request)

    def close(self) -> None:
        for client in self._clients.values():
            client.close()


__all__ = ["DEFAULT_CHAIN", "ProviderRegistry"]
