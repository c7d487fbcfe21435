"""
Response Cache Module

Thread-safe, process-local read-through cache for expensive reads.
Entries are keyed by (operation, key) and expire after a fixed TTL.

Concurrent misses on the same key are collapsed: the first caller loads the
value while the others wait on a per-key lock and then read the stored result.

Usage:
------
    from monitoring_api.cache import ResponseCache, cached

    class MetricService:
        def __init__(self, gateway, cache=None):
            self.cache = cache

        @cached("overview", "{time_range}")
        def get_overview_metrics(self, time_range="1h"):
            ...
"""

import functools
import inspect
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

DEFAULT_TTL_SECONDS = 30.0
DEFAULT_MAX_ENTRIES = 512


# =============================================================================
# CACHE
# =============================================================================

class ResponseCache:
    """
    TTL cache with bounded size and single-flight loading.

    Parameters
    ----------
    ttl_seconds : float
        Lifetime of an entry. Zero or less disables caching entirely.
    max_entries : int
        Oldest entries are evicted once this many are stored.
    clock : Callable[[], float]
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Tuple[str, Hashable], Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()
        self._loading: Dict[Tuple[str, Hashable], threading.Lock] = {}
        self._hits = 0
        self._misses = 0

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    def get(self, operation: str, key: Hashable) -> Tuple[bool, Any]:
        """Return (found, value) for a live entry."""
        with self._lock:
            entry = self._entries.get((operation, key))
            if entry is None:
                return False, None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[(operation, key)]
                return False, None
            return True, value

    def put(self, operation: str, key: Hashable, value: Any) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._entries[(operation, key)] = (self._clock() + self.ttl_seconds, value)
            self._entries.move_to_end((operation, key))
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def get_or_load(self, operation: str, key: Hashable, loader: Callable[[], Any]) -> Any:
        """
        Return the cached value, or call `loader` once and cache its result.

        Exceptions raised by `loader` propagate and nothing is cached.
        """
        if not self.enabled:
            return loader()

        found, value = self.get(operation, key)
        if found:
            with self._lock:
                self._hits += 1
            return value

        full_key = (operation, key)
        with self._lock:
            key_lock = self._loading.setdefault(full_key, threading.Lock())

        with key_lock:
            # Another thread may have filled the entry while we waited
            found, value = self.get(operation, key)
            if found:
                with self._lock:
                    self._hits += 1
                return value

            with self._lock:
                self._misses += 1
            try:
                value = loader()
                self.put(operation, key, value)
                return value
            finally:
                with self._lock:
                    if self._loading.get(full_key) is key_lock:
                        del self._loading[full_key]

    def clear(self) -> int:
        """Drop every entry; returns how many were removed."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl_seconds,
                "hits": self._hits,
                "misses": self._misses
            }


# =============================================================================
# DECORATOR
# =============================================================================

def cached(operation: str, key_template: str):
    """
    Cache a method's result in `self.cache` under `operation`.

    The key is rendered from the call's bound arguments (defaults applied),
    e.g. ``"{connector}|{time_range}"``. Methods on objects whose `cache`
    attribute is None are called directly.
    """
    def decorator(method):
        signature = inspect.signature(method)

        @functools.wraps(method)
        def wrapper(self, *args, **kwargs):
            cache: Optional[ResponseCache] = getattr(self, "cache", None)
            if cache is None:
                return method(self, *args, **kwargs)

            bound = signature.bind(self, *args, **kwargs)
            bound.apply_defaults()
            key = key_template.format(**bound.arguments)
            return cache.get_or_load(operation, key, lambda: method(self, *args, **kwargs))

        return wrapper

    return decorator
