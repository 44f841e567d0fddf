"""TTL-bounded cache of inline completion suggestions."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Protocol

__all__ = [
    "CacheEntry",
    "CacheKeyPolicy",
    "CacheStats",
    "ExactPrefixKeyPolicy",
    "ResultCache",
    "TrimmedTailKeyPolicy",
    "key_policy_for",
]

LOGGER = logging.getLogger(__name__)
DEFAULT_TTL_SECONDS = 60.0
DEFAULT_MAX_ENTRIES = 100
DEFAULT_EVICT_BATCH = 20


@dataclass(slots=True)
class CacheEntry:
    key: str
    value: str
    created_at: float


@dataclass(slots=True)
class CacheStats:
    """Counters describing cache effectiveness.

    Attributes:
        hits: Lookups answered from a live entry.
        misses: Lookups that found nothing usable, expired entries included.
        expirations: Entries dropped because their age reached the TTL.
        evictions: Entries dropped to bring the cache back under capacity.
    """

    hits: int = 0
    misses: int = 0
    expirations: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "expirations": self.expirations,
            "evictions": self.evictions,
            "hit_rate": self.hit_rate,
        }


class ResultCache:
    """Key/value store with lazy TTL expiry and batch eviction.

    Entries expire once ``now - created_at`` reaches ``ttl_seconds``; expiry is
    only checked on :meth:`get`. When a :meth:`put` pushes the size above
    ``max_entries`` the ``evict_batch`` oldest entries are dropped together.
    None of the methods await, so callers on one event loop always observe a
    consistent cache.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        evict_batch: int = DEFAULT_EVICT_BATCH,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._ttl_seconds = float(ttl_seconds)
        self._max_entries = max(1, int(max_entries))
        self._evict_batch = max(1, int(evict_batch))
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._stats = CacheStats()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @property
    def stats(self) -> CacheStats:
        return self._stats

    def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            return None
        if self._clock() - entry.created_at >= self._ttl_seconds:
            del self._entries[key]
            self._stats.expirations += 1
            self._stats.misses += 1
            return None
        self._stats.hits += 1
        return entry.value

    def put(self, key: str, value: str) -> None:
        # Re-inserting keeps dict order aligned with created_at.
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(key=key, value=value, created_at=self._clock())
        if len(self._entries) > self._max_entries:
            self._evict_oldest()

    def reconfigure(
        self,
        *,
        ttl_seconds: float | None = None,
        max_entries: int | None = None,
        evict_batch: int | None = None,
    ) -> None:
        """Apply new limits to the live cache, trimming it if it is now over capacity."""

        if ttl_seconds is not None:
            if ttl_seconds <= 0:
                raise ValueError("ttl_seconds must be positive")
            self._ttl_seconds = float(ttl_seconds)
        if max_entries is not None:
            self._max_entries = max(1, int(max_entries))
        if evict_batch is not None:
            self._evict_batch = max(1, int(evict_batch))
        while len(self._entries) > self._max_entries:
            self._evict_oldest()

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key) if isinstance(key, str) else None
        return entry is not None and self._clock() - entry.created_at < self._ttl_seconds

    def _evict_oldest(self) -> None:
        oldest = sorted(self._entries.values(), key=lambda entry: entry.created_at)[: self._evict_batch]
        for entry in oldest:
            del self._entries[entry.key]
        self._stats.evictions += len(oldest)
        LOGGER.debug("Evicted %s completion cache entries (size=%s)", len(oldest), len(self._entries))


class CacheKeyPolicy(Protocol):
    """Maps a completion trigger to a cache key."""

    name: str

    def key_for(self, language_id: str, line_prefix: str, context: str) -> str:
        ...


class ExactPrefixKeyPolicy:
    """Key on language, the exact line prefix and the leading context characters."""

    name = "exact"

    def __init__(self, *, context_chars: int = 50) -> None:
        self._context_chars = max(0, int(context_chars))

    def key_for(self, language_id: str, line_prefix: str, context: str) -> str:
        return f"{language_id}:{line_prefix}:{(context or '')[: self._context_chars]}"


class TrimmedTailKeyPolicy:
    """Coarser key: whitespace-normalized tail of the prefix.

    Leading indentation and runs of whitespace do not change the key, and only
    the last ``tail_chars`` characters of the prefix take part in it.
    """

    name = "tail"

    def __init__(self, *, tail_chars: int = 40, context_chars: int = 50) -> None:
        self._tail_chars = max(1, int(tail_chars))
        self._context_chars = max(0, int(context_chars))

    def key_for(self, language_id: str, line_prefix: str, context: str) -> str:
        normalized = " ".join(line_prefix.split())
        if line_prefix[-1:].isspace() and normalized:
            normalized += " "
        tail = normalized[-self._tail_chars :]
        return f"{language_id}:{tail}:{(context or '')[: self._context_chars]}"


_POLICIES: Dict[str, Callable[[], CacheKeyPolicy]] = {
    ExactPrefixKeyPolicy.name: ExactPrefixKeyPolicy,
    TrimmedTailKeyPolicy.name: TrimmedTailKeyPolicy,
}


def key_policy_for(name: str | None) -> CacheKeyPolicy:
    """Return the key policy registered under ``name`` (``"exact"`` when unknown)."""

    normalized = (name or "").strip().lower()
    factory = _POLICIES.get(normalized)
    if factory is None:
        if normalized:
            LOGGER.warning("Unknown cache key policy %r; using %r", name, ExactPrefixKeyPolicy.name)
        factory = ExactPrefixKeyPolicy
    return factory()
