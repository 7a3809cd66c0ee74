"""Cache tiers used by the lookup coordinator."""

from .keys import book_key, normalize_search_key, search_key
from .memory import MemoryCache
from .remote import DocumentCache, RedisDocumentCache

__all__ = [
    "DocumentCache",
    "MemoryCache",
    "RedisDocumentCache",
    "book_key",
    "normalize_search_key",
    "search_key",
]
