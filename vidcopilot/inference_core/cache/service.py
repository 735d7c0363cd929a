from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from hashlib import sha256
from typing import Any, Callable, Generic, Mapping, TypeVar

from loguru import logger

from vidcopilot.config import Settings
from vidcopilot.inference_core.errors import ValidationError

FINGERPRINT_VERSION = 1

V = TypeVar("V")
Clock = Callable[[], float]


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return " ".join(value.split()).lower()
    if isinstance(value, Mapping):
        return {str(k): _normalize(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, (bool, int, float)) or value is None:
        return value
    raise ValidationError(f"Unsupported fingerprint field type: {type(value).__name__}")


def fingerprint(fields: Mapping[str, Any]) -> str:
    """Deterministic cache key for the request-shaping fields.

    Strings are whitespace-collapsed and lower-cased, ``None`` fields are
    dropped (an unpinned seed does not split the cache), and key order does
    not matter.
    """
    if not fields:
        raise ValidationError("Fingerprint needs at least one field")
    canonical = json.dumps(_normalize(fields), sort_keys=True, separators=(",", ":"))
    return sha256(f"v{FINGERPRINT_VERSION}|{canonical}".encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[V]):
    key: str
    value: V
    created_at: float
    expires_at: float


class ResultCache(Generic[V]):
    """In-memory TTL cache with a size cap and oldest-created eviction.

    Reads never promote an entry; the victim on overflow is always the entry
    created first.
    """

    def __init__(
        self,
        *,
        max_entries: int = 100,
        default_ttl: float = 24 * 60 * 60,
        clock: Clock = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry[V]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._deletes = 0

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Clock = time.monotonic) -> ResultCache:
        return cls(
            max_entries=max(int(settings.cache_max_entries), 1),
            default_ttl=max(float(settings.cache_ttl_seconds), 0.0),
            clock=clock,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> V | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                self._deletes += 1
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def peek(self, key: str) -> V | None:
        """Like ``get`` but leaves hit/miss counters and expired entries alone."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._clock() >= entry.expires_at:
                return None
            return entry.value

    def set(self, key: str, value: V, ttl: float | None = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl < 0:
            raise ValidationError("Cache TTL must be >= 0")
        with self._lock:
            now = self._clock()
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.max_entries:
                self._evict_oldest()
            self._entries[key] = CacheEntry(key=key, value=value, created_at=now, expires_at=now + ttl)
            self._sets += 1

    def invalidate(self, key: str) -> None:
        with self._lock:
            if self._entries.pop(key, None) is not None:
                self._deletes += 1

    def clear(self) -> None:
        with self._lock:
            self._deletes += len(self._entries)
            self._entries.clear()

    def cleanup(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]
            self._deletes += len(expired)
            return len(expired)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "size": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "sets": self._sets,
                "deletes": self._deletes,
                "hit_rate": self._hits / lookups if lookups else 0.0,
            }

    def _evict_oldest(self) -> None:
        # min() keeps the first of equal timestamps, i.e. insertion order.
        oldest = min(self._entries.values(), key=lambda entry: entry.created_at)
        del self._entries[oldest.key]
        self._deletes += 1
        logger.debug(f"Cache full ({self.max_entries}), evicted {oldest.key[:12]}")
