"""Open metadata catalog provider: OpenLibrary editions."""

from __future__ import annotations

from typing import List, Mapping, Optional

import requests

from book_aggregator import logging_manager as log_mgr
from book_aggregator.catalog.types import ProviderSource

from .base import BaseProviderClient, ProviderPayload, ProviderQuery

logger = log_mgr.get_logger().getChild("providers.openlibrary")

_OPENLIBRARY_BASE_URL = "https://openlibrary.org"


class OpenLibraryClient(BaseProviderClient):
    """OpenLibrary edition lookups by ISBN. No API key required."""

    name = ProviderSource.OPENLIBRARY

    def __init__(
        self,
        *,
        session: Optional[requests.Session] = None,
        api_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
        base_url: str = _OPENLIBRARY_BASE_URL,
    ) -> None:
        super().__init__(session=session, api_key=api_key, timeout_seconds=timeout_seconds)
        self._base_url = base_url.rstrip("/")

    def lookup(self, query: ProviderQuery) -> List[ProviderPayload]:
        for isbn in query.isbns:
            logger.info("Looking up OpenLibrary edition by ISBN: %s", isbn)
            payload = self._get(f"{self._base_url}/isbn/{isbn}.json")
            if isinstance(payload, Mapping) and payload.get("key"):
                return [ProviderPayload(self.name, payload, f"{self.name.value}:{payload['key']}")]
        return []


__all__ = ["OpenLibraryClient"]
