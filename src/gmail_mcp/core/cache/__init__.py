"""
Expiring resource cache for auth status, tool sets and client handles.
"""

from gmail_mcp.core.cache.keys import CacheKeys
from gmail_mcp.core.cache.models import CacheEntry, CacheKind, CacheStats, is_valid
from gmail_mcp.core.cache.resource_cache import (
    DEFAULT_TTL_SECONDS, Disposable, ExpiringResourceCache,
)

__all__ = [
    "CacheEntry",
    "CacheKeys",
    "CacheKind",
    "CacheStats",
    "DEFAULT_TTL_SECONDS",
    "Disposable",
    "ExpiringResourceCache",
    "is_valid",
]
