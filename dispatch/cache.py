"""
Local cache layer.

A CacheContext holds two pieces of shared mutable state:
- a time-boxed cache of lookups (category lists, resolved categories)
- an in-flight map used to de-duplicate concurrent identical requests

Design decisions:
- The context is an explicit object passed to the components that use it, not
  module-global state, so tests can isolate instances and control the clock
- Every entry carries its own TTL metadata
- All mutation goes through dedupe(): a caller asking for a key that is already
  in flight awaits the same future instead of issuing a second backend call
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger("cache")

T = TypeVar("T")

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    value: Any
    stored_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.stored_at < self.ttl


class CacheContext:
    """
    TTL cache plus in-flight request de-duplication.

    Example usage:
        cache = CacheContext(default_ttl=300)

        categories = await cache.get_or_load(
            "categories:client:s1",
            lambda: store.select("notification_categories", where={...}),
        )
    """

    def __init__(self, default_ttl: float = 300.0, clock: Optional[Clock] = None):
        """
        Args:
            default_ttl: Lifetime of cache entries in seconds
            clock: Monotonic time source (injectable for tests)
        """
        self.default_ttl = default_ttl
        self.clock = clock or time.monotonic
        self._entries: dict[str, CacheEntry] = {}
        self._in_flight: dict[str, asyncio.Future] = {}
        self.hits = 0
        self.misses = 0
        self.coalesced = 0

    async def dedupe(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        """
        Run `factory` once per key at a time.

        Concurrent callers for a key already in flight receive the same
        result (or the same exception). The key is released as soon as the
        underlying call finishes.
        """
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._in_flight[key] = task
            task.add_done_callback(lambda done, key=key: self._release(key, done))
        else:
            self.coalesced += 1
            logger.debug(f"Coalescing request for '{key}'")
        # A cancelled caller must not cancel the shared execution
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Future) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"In-flight request '{key}' failed: {task.exception()}")

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[T]],
        ttl: Optional[float] = None,
    ) -> T:
        """Read-through lookup: return a fresh entry or load, store and return it."""
        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(self.clock()):
            self.hits += 1
            return entry.value

        self.misses += 1

        async def load_and_store() -> T:
            value = await loader()
            self._entries[key] = CacheEntry(
                value=value,
                stored_at=self.clock(),
                ttl=ttl if ttl is not None else self.default_ttl,
            )
            return value

        return await self.dedupe(f"load:{key}", load_and_store)

    def peek(self, key: str) -> Optional[Any]:
        """Return a fresh cached value without loading."""
        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(self.clock()):
            return entry.value
        return None

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cache entries under '{prefix}'")
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def stats(self) -> dict[str, int]:
        return {
            "entries": len(self._entries),
            "in_flight": len(self._in_flight),
            "hits": self.hits,
            "misses": self.misses,
            "coalesced": self.coalesced,
        }
