from __future__ import annotations

import pytest

from book_aggregator.cache import MemoryCache, book_key, normalize_search_key, search_key
from book_aggregator.catalog.types import SearchPage
from tests.helpers.fakes import FakeClock

pytestmark = pytest.mark.cache


class TestMemoryCache:
    def test_entries_expire_after_ttl(self):
        clock = FakeClock()
        cache = MemoryCache(capacity=10, ttl_seconds=60, clock=clock)
        cache.set("book:1", {"id": "1"})

        clock.advance(59)
        assert cache.get("book:1") == {"id": "1"}
        clock.advance(1)
        assert cache.get("book:1") is None
        assert "book:1" not in cache

    def test_per_entry_ttl_overrides_default(self):
        clock = FakeClock()
        cache = MemoryCache(capacity=10, ttl_seconds=60, clock=clock)
        cache.set("search:abc", ["1"], ttl_seconds=5)
        clock.advance(6)
        assert cache.get("search:abc") is None

    def test_least_recently_used_entry_is_evicted(self):
        cache = MemoryCache(capacity=2, ttl_seconds=60)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache
        assert len(cache) == 2

    def test_hit_and_miss_counters(self):
        cache = MemoryCache(capacity=2)
        cache.set("a", 1)
        cache.get("a")
        cache.get("missing")
        assert (cache.hits, cache.misses) == (1, 1)

    def test_delete_and_clear(self):
        cache = MemoryCache(capacity=4)
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.delete("a")
        assert not cache.delete("a")
        cache.clear()
        assert len(cache) == 0

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            MemoryCache(capacity=0)


class TestKeys:
    def test_book_key(self):
        assert book_key("0190a000-0000-7000-8000-000000000001") == (
            "book:0190a000-0000-7000-8000-000000000001"
        )

    def test_equivalent_searches_share_a_key(self):
        page = SearchPage(start=0, size=20)
        first = search_key("  The  Hobbit ", page, {"lang": "EN", "year": ""}, None)
        second = search_key("the hobbit", page, {"lang": "en"}, "default")
        assert first == second
        assert first.startswith("search:")
        assert len(first) == len("search:") + 32

    def test_pagination_and_sort_change_the_key(self):
        base = search_key("hobbit", SearchPage(start=0, size=20))
        assert search_key("hobbit", SearchPage(start=20, size=20)) != base
        assert search_key("hobbit", SearchPage(start=0, size=20), sort="newest") != base

    def test_normalized_form_sorts_filters(self):
        key = normalize_search_key("Dune", SearchPage(start=0, size=10), {"year": 1965, "lang": "en"}, "Newest")
        assert key == "dune|0|10|lang=en|year=1965|newest"
