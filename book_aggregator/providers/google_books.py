"""Primary bibliographic provider: Google Books volumes."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import requests

from book_aggregator import logging_manager as log_mgr
from book_aggregator.catalog.types import ProviderSource

from .base import BaseProviderClient, ProviderPayload, ProviderQuery, SearchRequest

logger = log_mgr.get_logger().getChild("providers.google_books")

_GOOGLE_BOOKS_BASE_URL = "https://www.googleapis.com/books/v1"
_MAX_RESULTS = 40
_ORDER_BY = {"relevance", "newest"}


class GoogleBooksClient(BaseProviderClient):
    """Google Books API client.

    Requires an API key. Lookups try the volume id first, then each ISBN.
    """

    name = ProviderSource.GOOGLE_BOOKS
    requires_api_key = True

    def __init__(
        self,
        *,
        session: Optional[requests.Session] = None,
        api_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
        base_url: str = _GOOGLE_BOOKS_BASE_URL,
    ) -> None:
        super().__init__(session=session, api_key=api_key, timeout_seconds=timeout_seconds)
        self._base_url = base_url.rstrip("/")

    def _get_with_auth(self, endpoint: str, *, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        if not self._api_key:
            return None
        query_params: Dict[str, Any] = {"key": self._api_key}
        if params:
            query_params.update(params)
        return self._get(f"{self._base_url}{endpoint}", params=query_params)

    def fetch_volume(self, volume_id: str) -> Optional[ProviderPayload]:
        payload = self._get_with_auth(f"/volumes/{volume_id}")
        if not isinstance(payload, Mapping) or not payload.get("volumeInfo"):
            return None
        return ProviderPayload(self.name, payload, f"{self.name.value}:{volume_id}")

    def lookup(self, query: ProviderQuery) -> List[ProviderPayload]:
        if not self.is_available:
            return []
        if query.provider_id:
            found = self.fetch_volume(query.provider_id)
            if found is not None:
                return [found]
        for isbn in query.isbns:
            logger.info("Looking up Google Books by ISBN: %s", isbn)
            payload = self._get_with_auth("/volumes", params={"q": f"isbn:{isbn}"})
            items = self._items(payload)
            if items:
                item = items[0]
                return [ProviderPayload(self.name, item, f"{self.name.value}:{item.get('id') or isbn}")]
        return []

    def search(self, request: SearchRequest) -> List[ProviderPayload]:
        if not self.is_available or not request.query.strip():
            return []
        params: Dict[str, Any] = {
            "q": request.query.strip(),
            "startIndex": max(0, request.page.start),
            "maxResults": min(max(1, request.page.size), _MAX_RESULTS),
        }
        language = request.filters.get("lang") or request.filters.get("language")
        if language:
            params["langRestrict"] = str(language).lower()
        order_by = (request.sort or "").lower()
        if order_by in _ORDER_BY:
            params["orderBy"] = order_by

        logger.info("Searching Google Books: %s", params["q"])
        items = self._items(self._get_with_auth("/volumes", params=params))

        year = request.filters.get("year")
        if year:
            items = [
                item
                for item in items
                if str((item.get("volumeInfo") or {}).get("publishedDate", "")).startswith(str(year))
            ]
        return [
            ProviderPayload(self.name, item, f"{self.name.value}:{item.get('id')}")
            for item in items
            if item.get("id")
        ]

    @staticmethod
    def _items(payload: Any) -> List[Mapping[str, Any]]:
        if not isinstance(payload, Mapping):
            return []
        items = payload.get("items")
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, Mapping)]


__all__ = ["GoogleBooksClient"]
