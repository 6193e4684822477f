"""
DAO Cache
=========

Purpose
-------
Best-effort read-through cache for single-key lookups of one DAO.

- Entries are keyed by primary key and hold a deep copy (snapshot) of the
  entity, so callers mutating a returned entity never corrupt the cache.
- Capacity eviction is least-recently-used.
- Calls whose operation name matches the invalidation filter (by default
  names starting with save / insert / update / delete / upsert / execute,
  plain or ``batch_`` prefixed) clear the whole cache after
  ``CACHE_EVICT_DELAY_SECONDS``, not immediately, to tolerate replicas that
  are eventually consistent. Reads inside that window may be stale.

Deadlines are checked lazily on the next cache access; no background thread
is started.

Usage
-----
.. code-block:: python

    user_dao = engine.register(User, cache=True)
    user_dao.find_by_id(1)      # miss, loads and stores
    user_dao.find_by_id(1)      # hit
    user_dao.update(user)       # cache cleared 3 s later
"""

import copy
import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, List, Optional, Union

from daokit.config.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

DEFAULT_INVALIDATION_PATTERN = re.compile(
    r"^(batch_?)?(save|insert|update|delete|upsert|execute)", re.IGNORECASE
)
"""Operation names that invalidate the cache: ``update``, ``batch_delete_by_ids``, ``batchInsert`` ..."""

_MISS = object()


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    size: int
    evictions: int

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class DaoCache:
    """
    Thread-safe LRU cache with delayed whole-cache invalidation.

    Parameters
    ----------
    capacity : int
        Maximum number of entries.
    evict_delay : float
        Seconds between a mutating call and the invalidation it triggers.
    clock : callable
        Monotonic time source, replaceable in tests.
    """

    def __init__(
        self,
        capacity: int = 1000,
        evict_delay: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError(f"Cache capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.evict_delay = evict_delay
        self._clock = clock
        self._entries: "OrderedDict[Any, Any]" = OrderedDict()
        self._deadlines: List[float] = []
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "DaoCache":
        config = config or default_settings
        return cls(capacity=config.CACHE_CAPACITY, evict_delay=config.CACHE_EVICT_DELAY_SECONDS)

    def _expire(self) -> None:
        now = self._clock()
        due = [d for d in self._deadlines if d <= now]
        if due:
            self._deadlines = [d for d in self._deadlines if d > now]
            self._entries.clear()
            logger.debug("Cache invalidated (%d pending deadline(s) left)", len(self._deadlines))

    def get(self, key: Any, default: Any = None) -> Any:
        with self._lock:
            self._expire()
            value = self._entries.get(key, _MISS)
            if value is _MISS:
                self._misses += 1
                return default
            self._entries.move_to_end(key)
            self._hits += 1
            return copy.deepcopy(value)

    def put(self, key: Any, value: Any) -> None:
        snapshot = copy.deepcopy(value)
        with self._lock:
            self._expire()
            self._entries[key] = snapshot
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)
                self._evictions += 1

    def __contains__(self, key: Any) -> bool:
        with self._lock:
            self._expire()
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            self._expire()
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._deadlines.clear()

    def schedule_invalidation(self) -> None:
        """Clear the cache once ``evict_delay`` seconds have passed."""
        with self._lock:
            if self.evict_delay <= 0:
                self._entries.clear()
                return
            self._deadlines.append(self._clock() + self.evict_delay)

    @property
    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(self._hits, self._misses, len(self._entries), self._evictions)


class CachedDao:
    """
    Intercepts calls to a DAO: ``find_by_id`` reads through the cache and
    operations matching the invalidation filter schedule an invalidation.
    Every other attribute is forwarded unchanged.

    ``find_by_id`` calls made inside a live transaction, or with an explicit
    projection, bypass the cache.
    """

    def __init__(
        self,
        dao: Any,
        cache: DaoCache,
        invalidate_on: Union[str, re.Pattern, Callable[[str], bool]] = DEFAULT_INVALIDATION_PATTERN,
    ) -> None:
        self._dao = dao
        self.cache = cache
        if callable(invalidate_on) and not isinstance(invalidate_on, re.Pattern):
            self._invalidates = invalidate_on
        else:
            pattern = re.compile(invalidate_on) if isinstance(invalidate_on, str) else invalidate_on
            self._invalidates = lambda name: pattern.search(name) is not None

    @property
    def dao(self) -> Any:
        return self._dao

    def find_by_id(self, id_value: Any, select_props=None, *, tx=None) -> Any:
        if select_props is not None or (tx is not None and tx.in_transaction):
            return self._dao.find_by_id(id_value, select_props, tx=tx)
        entity = self.cache.get(id_value, _MISS)
        if entity is not _MISS:
            return entity
        entity = self._dao.find_by_id(id_value, tx=tx)
        if entity is not None:
            self.cache.put(id_value, entity)
        return entity

    def call(self, name: str, *args: Any, **kwargs: Any) -> Any:
        try:
            return self._dao.call(name, *args, **kwargs)
        finally:
            if self._invalidates(name):
                self.cache.schedule_invalidation()

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        attr = getattr(self._dao, name)
        if not callable(attr) or not self._invalidates(name):
            return attr

        @wraps(attr)
        def invalidating(*args, **kwargs):
            try:
                return attr(*args, **kwargs)
            finally:
                self.cache.schedule_invalidation()

        return invalidating

    def __repr__(self) -> str:
        return f"CachedDao({self._dao!r}, size={len(self.cache)})"
