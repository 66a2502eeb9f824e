"""
Bounded in-process caching.

`LRUCache` is a generic asyncio-safe LRU with a hard capacity and a per-entry
TTL. `QueryEmbeddingCache` layers the embedding key scheme on top of it so a
vector is only ever reused for the same model and the same preprocessed text.
"""

import asyncio
import hashlib
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, List, NamedTuple, Optional, Sequence


@dataclass
class CacheStats:
    hits: int
    misses: int
    size: int
    capacity: int
    evictions: int
    expirations: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class _Entry(NamedTuple):
    value: Any
    expires_at: float


class LRUCache:
    """
    Asyncio-safe LRU cache.

    Expired entries are dropped lazily on read or in bulk by `purge_expired`.
    Writing an existing key refreshes both its TTL and its recency.
    """

    def __init__(
        self,
        capacity: int = 1024,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0:
            raise ValueError(f"Cache capacity must be positive, got {capacity}")
        if ttl_seconds <= 0:
            raise ValueError(f"Cache TTL must be positive, got {ttl_seconds}")
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def _is_live(self, entry: _Entry) -> bool:
        return entry.expires_at > self._clock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not self._is_live(entry):
                del self._entries[key]
                self._expirations += 1
                entry = None
            if entry is None:
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    async def set(self, key: str, value: Any) -> None:
        entry = _Entry(value, self._clock() + self.ttl_seconds)
        async with self._lock:
            if key not in self._entries and len(self._entries) >= self.capacity:
                self._entries.popitem(last=False)
                self._evictions += 1
            self._entries[key] = entry
            self._entries.move_to_end(key)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def purge_expired(self) -> int:
        async with self._lock:
            expired = [key for key, entry in self._entries.items() if not self._is_live(entry)]
            for key in expired:
                del self._entries[key]
            self._expirations += len(expired)
            return len(expired)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    async def stats(self) -> CacheStats:
        async with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                size=len(self._entries),
                capacity=self.capacity,
                evictions=self._evictions,
                expirations=self._expirations,
            )


class QueryEmbeddingCache:
    """
    Embedding vectors keyed by (model, sha256 of the preprocessed text).

    Vectors are stored as tuples and handed out as fresh lists, so callers
    can mutate what they get back without corrupting the cache.
    """

    def __init__(self, cache: LRUCache, model: str) -> None:
        self._cache = cache
        self.model = model

    def key_for(self, text: str) -> str:
        digest = hashlib.sha256(text.encode('utf-8')).hexdigest()
        return f"embedding:{self.model}:{digest}"

    async def get_embedding(self, text: str) -> Optional[List[float]]:
        cached = await self._cache.get(self.key_for(text))
        return list(cached) if cached is not None else None

    async def set_embedding(self, text: str, embedding: Sequence[float]) -> None:
        await self._cache.set(self.key_for(text), tuple(embedding))

    async def invalidate(self, text: str) -> bool:
        return await self._cache.delete(self.key_for(text))

    async def stats(self) -> CacheStats:
        return await self._cache.stats()
