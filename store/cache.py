"""
Query result cache with TTL and pattern invalidation.

The cache is a pure performance layer in front of the remote store: removing
it changes latency, never correctness. It holds metadata only; decrypted
values are never stored here.
"""

import re
import time
import asyncio
import logging
import functools
from typing import Any, Awaitable, Callable, Optional
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class CacheEntry:
    """A cached value with its insertion time and lifetime."""
    key: str
    value: Any
    inserted_at: float
    ttl: float
    
    def is_expired(self, now: float) -> bool:
        return now - self.inserted_at > self.ttl


class QueryCache:
    """In-memory TTL cache, bounded in size, evicting oldest entries first."""
    
    DEFAULT_TTL = 5 * 60  # seconds
    DEFAULT_MAX_SIZE = 100
    
    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL,
        max_size: int = DEFAULT_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.
        
        Args:
            default_ttl: Lifetime in seconds for entries set without a ttl
            max_size: Maximum number of entries
            clock: Monotonic time source (seconds)
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.default_ttl = default_ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._sweep_task: Optional[asyncio.Task] = None
    
    def __len__(self) -> int:
        return len(self._entries)
    
    def __contains__(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING
    
    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value, or default if absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return default
        
        if entry.is_expired(self._clock()):
            del self._entries[key]
            self._misses += 1
            return default
        
        self._hits += 1
        return entry.value
    
    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Insert a value, evicting the oldest entry when at capacity."""
        # Re-inserting moves the key to the back of the eviction order
        self._entries.pop(key, None)
        
        if len(self._entries) >= self.max_size:
            oldest_key = next(iter(self._entries))
            del self._entries[oldest_key]
        
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            inserted_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )
    
    def invalidate(self, key: str) -> None:
        """Invalidate a specific cache entry."""
        self._entries.pop(key, None)
    
    def invalidate_pattern(self, pattern: str) -> int:
        """Invalidate all entries whose key matches the regex. Returns the number removed."""
        regex = re.compile(pattern)
        doomed = [key for key in self._entries if regex.search(key)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)
    
    def clear(self) -> None:
        """Clear all cache entries."""
        self._entries.clear()
    
    def cleanup(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)
    
    def stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        lookups = self._hits + self._misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / lookups if lookups else None,
        }
    
    # ------------------------------------------------------------------
    # Periodic sweep
    # ------------------------------------------------------------------
    
    @property
    def is_sweeping(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()
    
    def start_sweep(self, interval: float = 5 * 60) -> None:
        """Start the background task that removes expired entries every interval seconds."""
        if self.is_sweeping:
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop(interval))
    
    async def stop_sweep(self) -> None:
        """Cancel the background sweep and wait for it to finish."""
        task = self._sweep_task
        self._sweep_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    
    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            removed = self.cleanup()
            if removed:
                logger.debug("Cache sweep removed %d expired entries", removed)
    
    # ------------------------------------------------------------------
    # Memoization
    # ------------------------------------------------------------------
    
    def wrap(
        self,
        fn: Callable[..., Awaitable[Any]],
        key_generator: Callable[..., str],
        ttl: Optional[float] = None,
    ) -> Callable[..., Awaitable[Any]]:
        """
        Wrap an async function so its results are cached.
        
        Staleness is bounded by ttl. Concurrent misses for the same key are
        not de-duplicated: each caller runs fn.
        """
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            cache_key = key_generator(*args, **kwargs)
            
            cached = self.get(cache_key, _MISSING)
            if cached is not _MISSING:
                return cached
            
            result = await fn(*args, **kwargs)
            self.set(cache_key, result, ttl)
            return result
        
        return wrapper


def with_cache(
    cache: QueryCache,
    fn: Callable[..., Awaitable[Any]],
    key_generator: Callable[..., str],
    ttl: Optional[float] = None,
) -> Callable[..., Awaitable[Any]]:
    """Function form of QueryCache.wrap."""
    return cache.wrap(fn, key_generator, ttl)


class CacheKeys:
    """Cache key generators for consistent naming."""
    
    @staticmethod
    def listing(kind: str, owner_id: str, container_id: Optional[str] = None) -> str:
        return f"{kind}:list:{owner_id}:{container_id or '*'}"
    
    @staticmethod
    def search(kind: str, owner_id: str, query: str) -> str:
        return f"{kind}:search:{owner_id}:{query.lower()}"
    
    @staticmethod
    def tags(kind: str, owner_id: str, tags: list[str]) -> str:
        return f"{kind}:tags:{owner_id}:{','.join(sorted(tags))}"
    
    @staticmethod
    def owner_kind_pattern(kind: str, owner_id: str) -> str:
        """Regex matching every cached read for an owner and kind."""
        return f"^{re.escape(kind)}:[a-z]+:{re.escape(owner_id)}:"
