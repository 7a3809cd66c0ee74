"""HTTP clients for the external book metadata providers."""

from .base import BaseProviderClient, ProviderPayload, ProviderQuery, SearchRequest
from .google_books import GoogleBooksClient
from .nyt import NytBestsellerClient
from .openlibrary import OpenLibraryClient
from .registry import DEFAULT_CHAIN, ProviderRegistry

__all__ = [
    "BaseProviderClient",
    "DEFAULT_CHAIN",
    "GoogleBooksClient",
    "NytBestsellerClient",
    "OpenLibraryClient",
    "ProviderPayload",
    "ProviderQuery",
    "ProviderRegistry",
    "SearchRequest",
]
