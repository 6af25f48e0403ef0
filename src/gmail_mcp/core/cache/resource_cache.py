"""
Expiring resource cache.

Holds auth status records, tool-set snapshots and client handles per
caller-supplied key. Auth status and tool sets expire after a shared TTL;
client handles live until they are invalidated, at which point their
``close()`` coroutine is awaited. Staleness is checked on read, there is
no background sweeper.
"""

import asyncio
import time
from typing import (
    Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Set, Tuple,
    TypeVar,
)

from gmail_mcp.core.cache.models import (
    KIND_DEPENDENTS, CacheEntry, CacheKind, CacheStats, EntryRef, is_valid,
)
from gmail_mcp.core.exceptions import DisposalError
from gmail_mcp.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Fetch = Callable[[], Awaitable[T]]
Clock = Callable[[], float]

DEFAULT_TTL_SECONDS = 300.0

_Removed = Tuple[CacheKind, str, CacheEntry]


class Disposable(Protocol):
    """Anything stored under ``CacheKind.CLIENT``."""

    async def close(self) -> None:
        ...


class ExpiringResourceCache:
    """
    Get-or-populate cache for the three resource kinds.

    Concurrent misses for the same entry are not serialized unless
    ``single_flight`` is enabled: both callers fetch and the later write
    wins, except for client handles where the first stored handle is kept
    and the duplicate is closed. Failed fetches are never stored.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Clock = time.monotonic,
        single_flight: bool = False,
        on_disposal_error: Optional[Callable[[DisposalError], None]] = None,
    ):
        """
        Initialize the cache.

        Args:
            ttl_seconds: Lifetime of auth status and tool set entries
            clock: Monotonic time source in seconds
            single_flight: Coalesce concurrent misses for the same entry
            on_disposal_error: Called with every disposal failure, after logging
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")

        self.ttl = ttl_seconds
        self.single_flight = single_flight
        self._clock = clock
        self._on_disposal_error = on_disposal_error

        self._entries: Dict[CacheKind, Dict[str, CacheEntry]] = {kind: {} for kind in CacheKind}
        self._dependents: Dict[EntryRef, Set[EntryRef]] = {}
        self._parents: Dict[EntryRef, EntryRef] = {}
        self._in_flight: Dict[EntryRef, "asyncio.Future[Any]"] = {}
        self._stats = CacheStats()

    def ttl_for(self, kind: CacheKind) -> Optional[float]:
        """TTL applied to a kind; None for kinds that never expire."""
        return self.ttl if kind.expires else None

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _valid_entry(self, kind: CacheKind, key: str) -> Optional[CacheEntry]:
        entry = self._entries[kind].get(key)
        if entry is not None and is_valid(entry, self.ttl_for(kind), self._clock()):
            return entry
        return None

    def peek(self, kind: CacheKind, key: str) -> Optional[Any]:
        """Value of a valid entry, or None. Never fetches, never counts."""
        entry = self._valid_entry(kind, key)
        return entry.value if entry is not None else None

    def keys(self, kind: CacheKind) -> List[str]:
        """Keys currently stored for a kind, stale ones included."""
        return list(self._entries[kind])

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._entries.values())

    async def get_or_fetch(
        self,
        kind: CacheKind,
        key: str,
        fetch: Fetch,
        *,
        parent: Optional[EntryRef] = None,
    ) -> Any:
        """
        Return the cached value, or fetch, store and return a fresh one.

        Args:
            kind: Resource kind
            key: Exact-match key, usually built with ``CacheKeys``
            fetch: Zero-argument coroutine function producing the value
            parent: Entry this one is derived from; invalidating the parent
                also invalidates this entry

        Returns:
            The cached or freshly fetched value

        Raises:
            Whatever ``fetch`` raises. Nothing is cached in that case.
        """
        entry = self._valid_entry(kind, key)
        if entry is not None:
            self._stats.hits += 1
            logger.debug("Cache hit", extra={"kind": kind.value, "key": key})
            return entry.value

        self._stats.misses += 1
        logger.debug("Cache miss", extra={"kind": kind.value, "key": key})

        if not self.single_flight:
            return await self._populate(kind, key, fetch, parent)

        ref = (kind, key)
        pending = self._in_flight.get(ref)
        while pending is not None:
            self._stats.coalesced += 1
            try:
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
            # The fetching caller was cancelled; the first waiter to get here takes over.
            entry = self._valid_entry(kind, key)
            if entry is not None:
                return entry.value
            pending = self._in_flight.get(ref)
            logger.debug("Taking over abandoned fetch", extra={"kind": kind.value, "key": key})

        future = asyncio.get_running_loop().create_future()
        self._in_flight[ref] = future
        try:
            value = await self._populate(kind, key, fetch, parent)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unawaited failure is not reported at GC.
            future.exception()
            raise
        else:
            future.set_result(value)
            return value
        finally:
            if self._in_flight.get(ref) is future:
                del self._in_flight[ref]

    async def _populate(
        self,
        kind: CacheKind,
        key: str,
        fetch: Fetch,
        parent: Optional[EntryRef],
    ) -> Any:
        try:
            value = await fetch()
        except Exception as e:
            self._stats.fetch_failures += 1
            logger.error(
                f"Failed to populate {kind.value} entry {key}: {e}",
                extra={"kind": kind.value, "key": key},
            )
            stale = self._entries[kind].get(key)
            if stale is not None and not self._valid_entry(kind, key):
                # Nothing derived from the expired value can be trusted either.
                removed: List[_Removed] = []
                self._detach(kind, key, removed, set())
                await self._dispose_removed(removed)
            raise

        previous = self._entries[kind].get(key)
        if kind.disposable and previous is not None and previous.value is not value:
            # A racing caller stored its handle first; keep that one.
            logger.info("Closing duplicate client handle", extra={"kind": kind.value, "key": key})
            await self._dispose(key, value)
            return previous.value

        self._entries[kind][key] = CacheEntry(value=value, created_at=self._clock())
        if parent is not None:
            self._link(parent, (kind, key))
        logger.info("Cached fresh entry", extra={"kind": kind.value, "key": key})

        if previous is not None and previous.value is not value and previous.value != value:
            await self._drop_dependents(kind, key)

        return value

    async def _drop_dependents(self, kind: CacheKind, key: str) -> None:
        """Entries derived from a replaced value are no longer meaningful."""
        removed: List[_Removed] = []
        for child in list(self._dependents.pop((kind, key), ())):
            self._detach(child[0], child[1], removed, set())
        if removed:
            await self._dispose_removed(removed)

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    def _link(self, parent: EntryRef, child: EntryRef) -> None:
        old_parent = self._parents.get(child)
        if old_parent is not None and old_parent != parent:
            siblings = self._dependents.get(old_parent)
            if siblings is not None:
                siblings.discard(child)
        self._parents[child] = parent
        self._dependents.setdefault(parent, set()).add(child)

    def dependents(self, kind: CacheKind, key: str) -> Set[EntryRef]:
        """Entries registered as derived from (kind, key)."""
        return set(self._dependents.get((kind, key), ()))

    def _detach(
        self,
        kind: CacheKind,
        key: str,
        removed: List[_Removed],
        seen: Set[EntryRef],
    ) -> None:
        ref = (kind, key)
        if ref in seen:
            return
        seen.add(ref)

        entry = self._entries[kind].pop(key, None)
        if entry is not None:
            removed.append((kind, key, entry))
            self._stats.evictions += 1

        parent = self._parents.pop(ref, None)
        if parent is not None and parent in self._dependents:
            self._dependents[parent].discard(ref)

        for child_kind in KIND_DEPENDENTS.get(kind, ()):
            self._detach(child_kind, key, removed, seen)
        for child in list(self._dependents.pop(ref, ())):
            self._detach(child[0], child[1], removed, seen)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    async def invalidate(self, kind: CacheKind, key: str) -> bool:
        """
        Remove one entry and everything derived from it.

        Entries are removed before any client handle is closed, so a
        failing ``close()`` never leaves the entry behind and a second
        invalidation of the same key is a no-op.

        Returns:
            True if anything was removed
        """
        removed: List[_Removed] = []
        self._detach(kind, key, removed, set())
        if not removed:
            logger.debug("Nothing to invalidate", extra={"kind": kind.value, "key": key})
            return False

        logger.info(
            f"Invalidated {len(removed)} cache entries",
            extra={"kind": kind.value, "key": key},
        )
        await self._dispose_removed(removed)
        return True

    async def invalidate_all(self) -> None:
        """Drop every entry of every kind and close every client handle once."""
        removed: List[_Removed] = [
            (kind, key, entry)
            for kind, entries in self._entries.items()
            for key, entry in entries.items()
        ]
        for entries in self._entries.values():
            entries.clear()
        self._dependents.clear()
        self._parents.clear()
        self._stats.evictions += len(removed)

        logger.info(f"Cleared cache ({len(removed)} entries)")
        await self._dispose_removed(removed)

    async def _dispose_removed(self, removed: Iterable[_Removed]) -> None:
        handles = [(key, entry.value) for kind, key, entry in removed if kind.disposable]
        if handles:
            await asyncio.gather(*(self._dispose(key, handle) for key, handle in handles))

    async def _dispose(self, key: str, handle: Disposable) -> None:
        try:
            await handle.close()
        except Exception as e:
            self._stats.disposal_failures += 1
            error = DisposalError(f"Error closing client handle for {key}: {e}", key, e)
            logger.warning(str(error), extra={"key": key})
            if self._on_disposal_error is not None:
                self._on_disposal_error(error)
            return

        self._stats.disposals += 1
        logger.info("Closed client handle", extra={"key": key})

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        """Cache statistics, including live entry counts per kind."""
        self._stats.entries = {kind.value: len(entries) for kind, entries in self._entries.items()}
        stats = self._stats.to_dict()
        stats["ttl_seconds"] = self.ttl
        stats["single_flight"] = self.single_flight
        return stats

    def reset_stats(self) -> None:
        """Reset counters; entries are untouched."""
        self._stats = CacheStats()
