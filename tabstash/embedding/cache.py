"""Bounded in-process cache for query embeddings.

Query strings are embedded on every search, so identical queries (after trim
and lower-casing) reuse the vector computed the first time. Passage
embeddings are computed once per record and never cached here.

Notes
- Vectors are copied on ``set`` and on ``get``; callers can never mutate a
  cached vector.
- Capacity is enforced lazily at insert time by evicting least recently used
  entries. There is no timer; ``evict_older_than`` is called explicitly.
- Table mutation happens under a lock so diagnostics may be read from a
  worker thread.
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np
import structlog

from ..common.clock import Clock, SystemClock
from ..common.metrics import MetricsCollector

logger = structlog.get_logger("embedding.cache")

DEFAULT_MAX_AGE_SECONDS = 24 * 60 * 60


@dataclass
class CacheEntry:
    query: str
    task: str
    vector: np.ndarray
    last_access: float
    created_at: float
    access_count: int = 0


@dataclass
class CacheStats:
    size: int
    max_size: int
    hit_rate: float
    total_requests: int
    total_hits: int
    total_misses: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": self.hit_rate,
            "total_requests": self.total_requests,
            "total_hits": self.total_hits,
            "total_misses": self.total_misses,
        }


def normalize_query(text: str) -> str:
    return text.strip().lower()


class EmbeddingCache:
    """LRU cache keyed by (normalized query, task)."""

    def __init__(
        self,
        max_size: int = 1000,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.clock = clock or SystemClock()
        self.metrics = metrics

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @staticmethod
    def make_key(text: str, task: str) -> str:
        return f"{normalize_query(text)}:{task}"

    def get(self, text: str, task: str) -> Optional[np.ndarray]:
        """Return a copy of the cached vector, or ``None`` on a miss."""
        key = self.make_key(text, task)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
            else:
                entry.last_access = self.clock.now()
                entry.access_count += 1
                self._entries.move_to_end(key)
                self._hits += 1
                vector = entry.vector.copy()

        if entry is None:
            if self.metrics:
                self.metrics.record_cache_miss("query_embedding")
            logger.debug("Query embedding cache miss", query=text[:50], task=task)
            return None

        if self.metrics:
            self.metrics.record_cache_hit("query_embedding")
        logger.debug("Query embedding cache hit", query=text[:50], task=task)
        return vector

    def set(self, text: str, task: str, vector: np.ndarray) -> None:
        """Store a copy of ``vector``, evicting LRU entries over capacity."""
        key = self.make_key(text, task)
        now = self.clock.now()
        stored = np.asarray(vector).copy()

        evicted = 0
        with self._lock:
            self._entries[key] = CacheEntry(
                query=normalize_query(text),
                task=task,
                vector=stored,
                last_access=now,
                created_at=now,
            )
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
                evicted += 1

        if evicted:
            logger.debug("Evicted least recently used embeddings", evicted=evicted, max_size=self.max_size)

    def has(self, text: str, task: str) -> bool:
        """Membership check that does not count as an access."""
        with self._lock:
            return self.make_key(text, task) in self._entries

    def evict_older_than(self, max_age: float = DEFAULT_MAX_AGE_SECONDS) -> int:
        """Drop entries not accessed within ``max_age`` seconds."""
        cutoff = self.clock.now() - max_age
        with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.last_access < cutoff]
            for key in stale:
                del self._entries[key]

        if stale:
            logger.info("Evicted stale query embeddings", evicted=len(stale), max_age_seconds=max_age)
        return len(stale)

    def clear(self) -> None:
        """Drop every entry and reset statistics."""
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
            self._hits = 0
            self._misses = 0
        logger.info("Embedding cache cleared", entries=size)

    def reset_stats(self) -> None:
        with self._lock:
            self._hits = 0
            self._misses = 0

    def get_stats(self) -> CacheStats:
        with self._lock:
            total = self._hits + self._misses
            hit_rate = round(self._hits / total * 100, 2) if total else 0.0
            return CacheStats(
                size=len(self._entries),
                max_size=self.max_size,
                hit_rate=hit_rate,
                total_requests=total,
                total_hits=self._hits,
                total_misses=self._misses,
            )

    def debug(self) -> List[Dict[str, Any]]:
        """Redacted listing, most recently used last; never includes vectors."""
        now = self.clock.now()
        with self._lock:
            return [
                {
                    "key": entry.query[:50],
                    "task": entry.task,
                    "age_seconds": round(now - entry.created_at, 3),
                    "idle_seconds": round(now - entry.last_access, 3),
                    "access_count": entry.access_count,
                }
                for entry in self._entries.values()
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
