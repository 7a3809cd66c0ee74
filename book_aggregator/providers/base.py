"""Base class for book metadata provider clients."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import requests

from book_aggregator import logging_manager as log_mgr
from book_aggregator.catalog.errors import TransientIOError
from book_aggregator.catalog.types import ProviderSource, SearchPage

logger = log_mgr.get_logger().getChild("providers")

_RETRYABLE_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})


@dataclass(frozen=True, slots=True)
class ProviderQuery:
    """Identifiers a provider may be asked to look up."""

    isbn13: Optional[str] = None
    isbn10: Optional[str] = None
    provider_id: Optional[str] = None

    @property
    def isbns(self) -> List[str]:
        return [isbn for isbn in (self.isbn13, self.isbn10) if isbn]


@dataclass(frozen=True, slots=True)
class ProviderPayload:
    """A raw provider document tagged with where it came from."""

    source: ProviderSource
    payload: Mapping[str, Any]
    source_key: str


@dataclass(frozen=True, slots=True)
class SearchRequest:
    """A search as issued to the primary provider."""

    query: str
    page: SearchPage = field(default_factory=SearchPage)
    filters: Mapping[str, Any] = field(default_factory=dict)
    sort: Optional[str] = None


class BaseProviderClient(ABC):
    """Abstract base class for provider API clients.

    Subclasses implement :meth:`lookup`; search-capable providers also
    override :meth:`search`. Network failures and retryable HTTP statuses
    raise :class:`TransientIOError`; a missing document returns nothing.
    """

    name: ProviderSource
    requires_api_key: bool = False

    def __init__(
        self,
        *,
        session: Optional[requests.Session] = None,
        api_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._session = session or requests.Session()
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._owns_session = session is None

    @property
    def is_available(self) -> bool:
        """Return True unless the provider needs an API key that is missing."""
        return not (self.requires_api_key and not self._api_key)

    @abstractmethod
    def lookup(self, query: ProviderQuery) -> List[ProviderPayload]:
        """Return raw payloads for the identifiers in ``query``."""
        ...

    def search(self, request: SearchRequest) -> List[ProviderPayload]:
        return []

    def close(self) -> None:
        """Release resources."""
        if self._owns_session:
            self._session.close()

    def __enter__(self) -> "BaseProviderClient":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _get(
        self,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Optional[Any]:
        """GET ``url`` and return the decoded JSON body, or None for a 404."""
        try:
            response = self._session.get(
                url,
                params=params,
                headers={"Accept": "application/json", **(headers or {})},
                timeout=timeout or self._timeout,
            )
        except requests.RequestException as exc:
            raise TransientIOError(f"{self.name.value} request failed: {exc}") from exc

        if response.status_code == 404:
            return None
        if response.status_code in _RETRYABLE_STATUS:
            raise TransientIOError(
                f"{self.name.value} responded with HTTP {response.status_code}"
            )
        if response.status_code != 200:
            logger.warning(
                "%s returned HTTP %s for %s",
                self.name.value,
                response.status_code,
                url,
                extra={"event": "providers.http_error", "provider": self.name.value},
            )
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise TransientIOError(f"{self.name.value} returned invalid JSON") from exc


__all__ = [
    "BaseProviderClient",
    "ProviderPayload",
    "ProviderQuery",
    "SearchRequest",
]
