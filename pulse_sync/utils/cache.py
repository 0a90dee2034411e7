"""Short-TTL read-through cache for dashboard aggregate queries.

Usage:
    from pulse_sync.utils.cache import QueryCache

    cache = QueryCache(default_ttl=30)
    data = cache.get_or_compute(
        QueryCache.dashboard_key(client_id, periods, filters),
        ttl=None,
        compute_fn=lambda: aggregation.aggregate(client_id, periods, filters),
    )

compute_fn runs outside the cache mutex, so a slow aggregation never
blocks other readers. Two readers that miss at the same moment may both
compute; the later store wins. A value computed across an invalidation
is returned to its caller but never stored, so the next read recomputes.
"""
import json
import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple


class QueryCache:
    """Thread-safe in-memory cache with TTL expiry and max-entry limit."""

    def __init__(
        self,
        default_ttl: float = 30.0,
        max_entries: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self.hits = 0
        self.misses = 0
        self._generation = 0  # bumped by every invalidation

    @staticmethod
    def dashboard_key(client_id: str, periods: Iterable[str], filters: Optional[dict] = None) -> str:
        filter_part = json.dumps(filters or {}, sort_keys=True, default=str)
        return f"dashboard:{client_id}:{','.join(sorted(periods))}:{filter_part}"

    def get_or_compute(self, key: str, ttl: Optional[float], compute_fn: Callable[[], Any]) -> Any:
        """Return the cached value for ``key`` if still fresh, otherwise compute, store and return it."""
        now = self._clock()
        with self._lock:
            entry = self._store.get(key)
            if entry is not None:
                expires_at, value = entry
                if now <= expires_at:
                    self.hits += 1
                    return value
                del self._store[key]
            self.misses += 1
            generation = self._generation

        value = compute_fn()
        self.set(key, value, ttl, generation=generation)
        return value

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() > expires_at:
                del self._store[key]
                return None
            return value

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def set(self, key: str, value: Any, ttl: Optional[float] = None, generation: Optional[int] = None) -> bool:
        """
        Store ``value``. With ``generation``, the store is skipped (returns False)
        when an invalidation happened after that generation was read.
        """
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            now = self._clock()
            # Evict expired entries first to stay under limit
            if len(self._store) >= self.max_entries:
                expired = [k for k, (exp, _) in self._store.items() if now > exp]
                for k in expired:
                    del self._store[k]
            # If still at limit, evict the entry closest to expiry
            if len(self._store) >= self.max_entries and key not in self._store:
                oldest_key = min(self._store, key=lambda k: self._store[k][0])
                del self._store[oldest_key]
            self._store[key] = (now + ttl, value)
            return True

    def invalidate(self, predicate: Callable[[str], bool]) -> int:
        """Remove all keys matching predicate. Returns count removed."""
        with self._lock:
            self._generation += 1
            keys = [k for k in self._store if predicate(k)]
            for k in keys:
                del self._store[k]
            return len(keys)

    def invalidate_client(self, client_id: str) -> int:
        """Drop every dashboard aggregate cached for ``client_id``."""
        prefix = f"dashboard:{client_id}:"
        return self.invalidate(lambda k: k.startswith(prefix))

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._store.clear()

    def stats(self) -> dict:
        with self._lock:
            return {
                "size": len(self._store),
                "max_entries": self.max_entries,
                "hits": self.hits,
                "misses": self.misses,
                "keys": list(self._store.keys()),
            }
