"""Bestseller-list provider: New York Times Books API."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import requests

from book_aggregator import logging_manager as log_mgr
from book_aggregator.catalog.types import ProviderSource

from .base import BaseProviderClient, ProviderPayload, ProviderQuery

logger = log_mgr.get_logger().getChild("providers.nyt")

_NYT_BASE_URL = "https://api.nytimes.com/svc/books/v3"


def _latest_rank(history: Any) -> Optional[Mapping[str, Any]]:
    if not isinstance(history, list):
        return None
    entries = [entry for entry in history if isinstance(entry, Mapping)]
    if not entries:
        return None
    return max(entries, key=lambda entry: str(entry.get("bestsellers_date") or ""))


class NytBestsellerClient(BaseProviderClient):
    """Bestseller history and list overview client (API key required)."""

    name = ProviderSource.NYT
    requires_api_key = True

    def __init__(
        self,
        *,
        session: Optional[requests.Session] = None,
        api_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
        base_url: str = _NYT_BASE_URL,
    ) -> None:
        super().__init__(session=session, api_key=api_key, timeout_seconds=timeout_seconds)
        self._base_url = base_url.rstrip("/")

    def _get_with_auth(self, endpoint: str, *, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        if not self._api_key:
            return None
        query_params: Dict[str, Any] = {"api-key": self._api_key}
        if params:
            query_params.update(params)
        return self._get(f"{self._base_url}{endpoint}", params=query_params)

    def lookup(self, query: ProviderQuery) -> List[ProviderPayload]:
        """Return the most recent bestseller entry for the first ISBN with history."""
        if not self.is_available:
            return []
        for isbn in query.isbns:
            payload = self._get_with_auth("/lists/best-sellers/history.json", params={"isbn": isbn})
            results = payload.get("results") if isinstance(payload, Mapping) else None
            for result in results or []:
                entry = self._history_entry(result)
                if entry is not None:
                    return [ProviderPayload(self.name, entry, f"{self.name.value}:{isbn}")]
        return []

    def fetch_overview(self, published_date: Optional[str] = None) -> Optional[Mapping[str, Any]]:
        """Return the full list overview for ``published_date`` (default: current)."""
        params = {"published_date": published_date} if published_date else None
        payload = self._get_with_auth("/lists/overview.json", params=params)
        return payload if isinstance(payload, Mapping) else None

    @staticmethod
    def _history_entry(result: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(result, Mapping):
            return None
        latest = _latest_rank(result.get("ranks_history"))
        if latest is None:
            return None
        entry = {key: value for key, value in result.items() if key != "ranks_history"}
        for name in ("rank", "weeks_on_list", "bestsellers_date", "list_name", "display_name"):
            if latest.get(name) is not None:
                entry[name] = latest[name]
        for name in ("primary_isbn13", "primary_isbn10"):
            if latest.get(name):
                entry.setdefault(name, latest[name])
        return entry


__all__ = ["NytBestsellerClient"]
