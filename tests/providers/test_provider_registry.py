from __future__ import annotations

from typing import List

import pytest

from book_aggregator.catalog.errors import TransientIOError
from book_aggregator.catalog.types import ProviderSource
from book_aggregator.config_manager import AggregatorSettings
from book_aggregator.providers import (
    BaseProviderClient,
    ProviderPayload,
    ProviderQuery,
    ProviderRegistry,
    SearchRequest,
)
from tests.helpers.fakes import FakeSession

pytestmark = pytest.mark.providers


class StubClient(BaseProviderClient):
    def __init__(self, source: ProviderSource, *, payloads=None, error=None, available=True) -> None:
        super().__init__(session=FakeSession())
        self.name = source
        self.payloads: List[ProviderPayload] = list(payloads or [])
        self.error = error
        self.available = available
        self.calls = 0

    @property
    def is_available(self) -> bool:
        return self.available

    def lookup(self, query: ProviderQuery) -> List[ProviderPayload]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.payloads)

    def search(self, request: SearchRequest) -> List[ProviderPayload]:
        return list(self.payloads)


def _payload(source: ProviderSource) -> ProviderPayload:
    return ProviderPayload(source, {"id": source.value}, f"{source.value}:x")


def test_first_provider_with_results_wins():
    google = StubClient(ProviderSource.GOOGLE_BOOKS, payloads=[_payload(ProviderSource.GOOGLE_BOOKS)])
    openlibrary = StubClient(ProviderSource.OPENLIBRARY, payloads=[_payload(ProviderSource.OPENLIBRARY)])
    registry = ProviderRegistry({ProviderSource.GOOGLE_BOOKS: google, ProviderSource.OPENLIBRARY: openlibrary})

    [payload] = registry.lookup(ProviderQuery(isbn13="9780000000001"))

    assert payload.source is ProviderSource.GOOGLE_BOOKS
    assert openlibrary.calls == 0


def test_transient_failure_falls_through_to_next_provider():
    google = StubClient(ProviderSource.GOOGLE_BOOKS, error=TransientIOError("503"))
    openlibrary = StubClient(ProviderSource.OPENLIBRARY, payloads=[_payload(ProviderSource.OPENLIBRARY)])
    registry = ProviderRegistry({ProviderSource.GOOGLE_BOOKS: google, ProviderSource.OPENLIBRARY: openlibrary})

    [payload] = registry.lookup(ProviderQuery(isbn13="9780000000001"))

    assert payload.source is ProviderSource.OPENLIBRARY


def test_all_failures_raise_the_last_error():
    registry = ProviderRegistry(
        {
            ProviderSource.GOOGLE_BOOKS: StubClient(ProviderSource.GOOGLE_BOOKS, error=TransientIOError("a")),
            ProviderSource.OPENLIBRARY: StubClient(ProviderSource.OPENLIBRARY, error=TransientIOError("b")),
        }
    )
    with pytest.raises(TransientIOError, match="b"):
        registry.lookup(ProviderQuery(isbn13="9780000000001"))


def test_unavailable_providers_are_skipped():
    google = StubClient(ProviderSource.GOOGLE_BOOKS, available=False)
    registry = ProviderRegistry({ProviderSource.GOOGLE_BOOKS: google})

    assert registry.available_sources() == []
    assert registry.lookup(ProviderQuery(isbn13="9780000000001")) == []
    assert registry.search(SearchRequest(query="dune")) == []
    assert google.calls == 0


def test_from_settings_wires_every_provider():
    settings = AggregatorSettings(database_url="sqlite://", google_books_api_key="g", nyt_api_key=None)
    registry = ProviderRegistry.from_settings(settings, session=FakeSession())

    assert registry.available_sources() == [ProviderSource.GOOGLE_BOOKS, ProviderSource.OPENLIBRARY]
    assert registry.get_client(ProviderSource.NYT) is None
    registry.close()
