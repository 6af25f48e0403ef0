"""
Data structures for the expiring resource cache.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, Tuple, TypeVar

T = TypeVar("T")


class CacheKind(Enum):
    """Resource kinds held by the cache."""

    AUTH_STATUS = "auth_status"
    TOOL_SET = "tool_set"
    CLIENT = "client"

    @property
    def expires(self) -> bool:
        """Client handles live until disposed; everything else is time-bound."""
        return self is not CacheKind.CLIENT

    @property
    def disposable(self) -> bool:
        return self is CacheKind.CLIENT


# Removing an entry of the key kind also removes the same key in each listed kind.
KIND_DEPENDENTS: Dict[CacheKind, Tuple[CacheKind, ...]] = {
    CacheKind.CLIENT: (CacheKind.TOOL_SET,),
}

EntryRef = Tuple[CacheKind, str]


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A cached value and the clock reading at which it was stored."""

    value: T
    created_at: float


def is_valid(entry: CacheEntry, ttl: Optional[float], now: float) -> bool:
    """True while ``now - entry.created_at < ttl``; ``ttl=None`` never expires."""
    if ttl is None:
        return True
    return now - entry.created_at < ttl


@dataclass
class CacheStats:
    """Running counters for cache activity."""

    hits: int = 0
    misses: int = 0
    fetch_failures: int = 0
    evictions: int = 0
    disposals: int = 0
    disposal_failures: int = 0
    coalesced: int = 0
    entries: Dict[str, int] = field(default_factory=dict)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hit_rate,
            "fetch_failures": self.fetch_failures,
            "evictions": self.evictions,
            "disposals": self.disposals,
            "disposal_failures": self.disposal_failures,
            "coalesced": self.coalesced,
            "entries": dict(self.entries),
        }
