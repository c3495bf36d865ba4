"""Bounded in-memory cache for completion results.

Entries expire after a TTL and, when the cache is full, the least-hit entry
(oldest first on ties) is evicted before a new one is inserted. Nothing is
persisted; a process restart starts with an empty cache.
"""

import hashlib
import heapq
import itertools
import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from app.core.logging import get_logger
from app.core.metrics import MetricsRecorder

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_MAX_SIZE = 100

# Number of system-message characters that take part in the key
SYSTEM_PREFIX_CHARS = 50

_WHITESPACE = re.compile(r"\s+")


def normalize_prompt(text: str) -> str:
    """Case-fold and collapse whitespace. Punctuation and symbols are kept (C++ vs C#)."""
    return _WHITESPACE.sub(" ", text.casefold()).strip()


def make_cache_key(prompt: str, system_message: str | None = None, context: str | None = None) -> str:
    """
    Derive a cache key from the semantic content of a request.

    Args:
        prompt: User prompt
        system_message: Optional system message (only its prefix is used)
        context: Call-site context, e.g. the stage name

    Returns:
        Hex digest identifying the request
    """
    system_prefix = normalize_prompt((system_message or "")[:SYSTEM_PREFIX_CHARS])
    material = "\x1f".join([context or "", system_prefix, normalize_prompt(prompt)])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    """One cached value."""

    key: str
    value: Any
    created_at: float
    hit_count: int = 0
    last_accessed: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)


class GenerationCache:
    """
    TTL + least-hit bounded cache, safe for concurrent use.

    Eviction candidates live in a heap of ``(hit_count, created_at, seq, key)``.
    A hit pushes a fresh tuple instead of re-heapifying; stale tuples are
    skipped when popped, which keeps get/set amortized O(log n).
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_size: int = DEFAULT_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsRecorder | None = None,
    ):
        if max_size < 1:
            raise ValueError(f"max_size must be positive, got {max_size}")
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")

        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._metrics = metrics
        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}
        self._heap: list[tuple[int, float, int, str]] = []
        self._seq = itertools.count()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at >= self.ttl_seconds

    def _push(self, entry: CacheEntry) -> None:
        heapq.heappush(self._heap, (entry.hit_count, entry.created_at, next(self._seq), entry.key))
        # Stale tuples pile up on hot keys; rebuild once they dominate
        if len(self._heap) > 4 * max(len(self._entries), self.max_size):
            self._heap = [
                (e.hit_count, e.created_at, next(self._seq), e.key) for e in self._entries.values()
            ]
            heapq.heapify(self._heap)

    def _purge_expired(self, now: float) -> None:
        expired = [k for k, e in self._entries.items() if self._is_expired(e, now)]
        for key in expired:
            del self._entries[key]

    def _evict_one(self) -> None:
        while self._heap:
            hit_count, created_at, _, key = heapq.heappop(self._heap)
            entry = self._entries.get(key)
            if entry is None or entry.hit_count != hit_count or entry.created_at != created_at:
                continue
            del self._entries[key]
            self._evictions += 1
            logger.debug(
                "Evicted cache entry",
                extra={"cache_key": key[:12], "hit_count": hit_count},
            )
            return

    def get(self, key: str) -> Any | None:
        """
        Return the cached value, or None if absent or expired.

        Expired entries are removed on access. A hit increments the
        entry's hit count.
        """
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is not None and self._is_expired(entry, now):
                del self._entries[key]
                entry = None

            if entry is None:
                self._misses += 1
                hit = False
            else:
                entry.hit_count += 1
                entry.last_accessed = now
                self._push(entry)
                self._hits += 1
                hit = True
                value = entry.value

        if self._metrics:
            self._metrics.record_event("cache_hits" if hit else "cache_misses")
        return value if hit else None

    def set(self, key: str, value: Any, **metadata: Any) -> None:
        """
        Insert or replace a value.

        A new key inserted into a full cache first drops expired entries and
        then, if still full, evicts the least-hit entry.
        """
        with self._lock:
            now = self._clock()
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._purge_expired(now)
                while len(self._entries) >= self.max_size:
                    self._evict_one()

            entry = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                last_accessed=now,
                metadata=metadata,
            )
            self._entries[key] = entry
            self._push(entry)

    def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it was present."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        """Remove every entry."""
        with self._lock:
            self._entries.clear()
            self._heap.clear()
        logger.info("Generation cache cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not self._is_expired(entry, self._clock())

    def stats(self) -> dict[str, Any]:
        """Size, hit/miss counters and the age of the oldest entry."""
        with self._lock:
            now = self._clock()
            oldest = min((e.created_at for e in self._entries.values()), default=None)
            total_hits = sum(e.hit_count for e in self._entries.values())
            size = len(self._entries)
            return {
                "size": size,
                "max_size": self.max_size,
                "ttl_seconds": self.ttl_seconds,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "oldest_entry_age_seconds": round(now - oldest, 3) if oldest is not None else None,
                "average_hits_per_entry": round(total_hits / size, 1) if size else 0,
            }
