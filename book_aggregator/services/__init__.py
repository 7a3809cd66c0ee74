"""Read-side services built on the catalog and cache layers."""

from .tiered_lookup import (
    TIER_DATABASE,
    TIER_MEMORY,
    TIER_PROVIDER,
    TIER_REMOTE,
    TierLookupCoordinator,
)

__all__ = [
    "TIER_DATABASE",
    "TIER_MEMORY",
    "TIER_PROVIDER",
    "TIER_REMOTE",
    "TierLookupCoordinator",
]
