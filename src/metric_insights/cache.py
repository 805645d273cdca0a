"""Bounded, TTL-expiring memo for analytics computations."""

import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .config_manager import CacheConfig
from .logging_manager import get_logger, get_logging_manager

logger = get_logger(__name__)

_MISSING = object()


@dataclass
class CacheEntry:
    value: Any
    timestamp: float
    expires_at: float


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if hasattr(obj, 'to_dict'):
        return obj.to_dict()
    if hasattr(obj, '__dict__'):
        return vars(obj)
    return str(obj)


def make_cache_key(key: Any) -> str:
    """Stable string form of a cache key.

    Strings pass through; numbers and booleans use ``str``; anything else is
    serialized as sorted-key JSON with datetimes as ISO strings, so two
    structurally equal keys map to the same entry.
    """
    if isinstance(key, str):
        return key
    if isinstance(key, (bool, int, float)):
        return str(key)
    return json.dumps(key, sort_keys=True, default=_json_default)


class ComputationCache:
    """Thread-safe key/value memo with per-entry TTL and an entry cap.

    When the cap is exceeded the oldest insertions are evicted first.
    ``get_or_compute`` runs the compute function at most once per key even
    when several threads ask for the same missing key concurrently.
    """

    def __init__(self, max_entries: int = 1000, default_ttl: float = 300.0):
        if max_entries <= 0:
            raise ValueError(f"max_entries must be positive, got {max_entries}")
        if default_ttl <= 0:
            raise ValueError(f"default_ttl must be positive, got {default_ttl}")

        self.max_entries = max_entries
        self.default_ttl = default_ttl

        self._entries: 'OrderedDict[str, CacheEntry]' = OrderedDict()
        self._lock = threading.RLock()
        self._inflight: Dict[str, threading.Lock] = {}

        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @classmethod
    def from_config(cls, config: CacheConfig) -> 'ComputationCache':
        return cls(max_entries=config.max_entries, default_ttl=config.default_ttl)

    def get(self, key: Any, max_age: Optional[float] = None) -> Any:
        """Return the live value for ``key`` or None.

        ``max_age`` (seconds) additionally rejects entries older than it,
        regardless of their own TTL.
        """
        value = self._lookup(make_cache_key(key), max_age)
        return None if value is _MISSING else value

    def set(self, key: Any, value: Any, ttl: Optional[float] = None) -> None:
        self._store(make_cache_key(key), value, ttl)

    def get_or_compute(self, key: Any, compute_fn: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        """Return the cached value, computing and storing it when absent."""
        cache_key = make_cache_key(key)

        value = self._lookup(cache_key)
        if value is not _MISSING:
            return value

        with self._lock:
            key_lock = self._inflight.setdefault(cache_key, threading.Lock())

        with key_lock:
            # Another thread may have filled the entry while we waited
            value = self._lookup(cache_key, record=False)
            if value is not _MISSING:
                return value

            try:
                value = compute_fn()
                self._store(cache_key, value, ttl)
            finally:
                with self._lock:
                    if self._inflight.get(cache_key) is key_lock:
                        del self._inflight[cache_key]

        return value

    def remove(self, key: Any) -> None:
        with self._lock:
            self._entries.pop(make_cache_key(key), None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.debug("Computation cache cleared")

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: Any) -> bool:
        return self._lookup(make_cache_key(key), record=False) is not _MISSING

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                'size': len(self._entries),
                'max_entries': self.max_entries,
                'hits': self._hits,
                'misses': self._misses,
                'evictions': self._evictions,
                'hit_rate': self._hits / total if total else 0.0,
            }

    def _lookup(self, cache_key: str, max_age: Optional[float] = None, record: bool = True) -> Any:
        now = time.time()
        with self._lock:
            entry = self._entries.get(cache_key)
            if entry is not None and (entry.expires_at < now or
                                      (max_age is not None and now - entry.timestamp > max_age)):
                del self._entries[cache_key]
                entry = None

            if record:
                if entry is None:
                    self._misses += 1
                else:
                    self._hits += 1

        if record:
            get_logging_manager().metrics.record_cache_event("miss" if entry is None else "hit")

        return _MISSING if entry is None else entry.value

    def _store(self, cache_key: str, value: Any, ttl: Optional[float]) -> None:
        now = time.time()
        ttl_to_use = ttl if ttl is not None and ttl > 0 else self.default_ttl
        evicted = 0

        with self._lock:
            self._entries.pop(cache_key, None)
            self._entries[cache_key] = CacheEntry(value=value, timestamp=now, expires_at=now + ttl_to_use)

            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                evicted += 1
            self._evictions += evicted

        for _ in range(evicted):
            get_logging_manager().metrics.record_cache_event("eviction")
