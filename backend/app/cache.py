from __future__ import annotations

"""In-memory TTL cache for provider responses keyed by request fingerprint."""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
import hashlib
import json
import threading
import time
from typing import Any

from .providers import Completion

__all__ = [
    "CacheEntry",
    "ResponseCache",
    "fingerprint",
    "normalize_text",
]


def _provider_name(provider) -> str:
    return str(getattr(provider, "value", provider))


def normalize_text(text: str) -> str:
    """Normalize line endings and surrounding/trailing whitespace."""

    unified = text.replace("\r\n", "\n").replace("\r", "\n")
    return "\n".join(line.rstrip() for line in unified.strip().split("\n"))


def fingerprint(
    provider: str,
    operation: str,
    text: str,
    options: Mapping[str, Any] | None = None,
) -> str:
    """Deterministic SHA-256 over the semantically relevant request fields."""

    payload = {
        "provider": _provider_name(provider),
        "operation": operation,
        "text": normalize_text(text),
        "options": {
            key: value
            for key, value in sorted((options or {}).items())
            if value is not None
        },
    }
    stable = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(stable.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    """Cached completion plus the provider that produced it."""

    completion: Completion
    provider: str
    created_at: float
    ttl: float
    requested_provider: str = ""

    def expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl


class ResponseCache:
    """Thread-safe TTL cache with lazy expiry and oldest-first eviction.

    ``enabled`` is consulted on every call; when it returns ``False`` the
    cache is bypassed entirely (reads miss, writes are dropped).

    Every invalidation bumps ``generation``. A writer that read the
    generation before starting its provider call passes it to ``put``; if an
    invalidation happened in between, the write is dropped.
    """

    def __init__(
        self,
        enabled: Callable[[], bool] = lambda: True,
        max_entries: int = 2048,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._enabled = enabled
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._store: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._stats = {"hits": 0, "misses": 0, "writes": 0, "evictions": 0, "stale_writes": 0}
        self._generation = 0

    @property
    def enabled(self) -> bool:
        return bool(self._enabled())

    @property
    def generation(self) -> int:
        """Counter bumped by every invalidation."""

        return self._generation

    def get(self, key: str) -> CacheEntry | None:
        """Return the live entry for ``key`` or ``None`` on miss/expiry."""

        if not self.enabled:
            return None
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None
            if entry.expired(self._clock()):
                del self._store[key]
                self._stats["evictions"] += 1
                self._stats["misses"] += 1
                return None
            self._stats["hits"] += 1
            return entry

    def put(
        self,
        key: str,
        completion: Completion,
        provider: str,
        ttl: float,
        requested_provider: str | None = None,
        generation: int | None = None,
    ) -> bool:
        """Store a completion; last write for the same key wins.

        ``requested_provider`` is the provider the fingerprint was computed
        for, which differs from ``provider`` when a fallback served the call.
        Returns ``False`` when nothing was stored.
        """

        if not self.enabled or ttl <= 0:
            return False
        with self._lock:
            if generation is not None and generation != self._generation:
                self._stats["stale_writes"] += 1
                return False
            if key not in self._store and len(self._store) >= self._max_entries:
                # Evict oldest
                oldest_key = min(self._store.items(), key=lambda kv: kv[1].created_at)[0]
                self._store.pop(oldest_key, None)
                self._stats["evictions"] += 1
            self._store[key] = CacheEntry(
                completion=completion,
                provider=_provider_name(provider),
                created_at=self._clock(),
                ttl=float(ttl),
                requested_provider=_provider_name(requested_provider or provider),
            )
            self._stats["writes"] += 1
            return True

    def invalidate_all(self) -> int:
        """Drop every entry; returns how many were removed."""

        with self._lock:
            removed = len(self._store)
            self._store.clear()
            self._generation += 1
            return removed

    def invalidate_provider(self, provider: str) -> int:
        """Drop entries produced by or requested for ``provider``."""

        name = _provider_name(provider)
        with self._lock:
            stale = [
                key
                for key, entry in self._store.items()
                if name in (entry.provider, entry.requested_provider)
            ]
            for key in stale:
                del self._store[key]
            self._generation += 1
            return len(stale)

    def purge_expired(self) -> int:
        """Reclaim expired entries eagerly."""

        now = self._clock()
        with self._lock:
            stale = [key for key, entry in self._store.items() if entry.expired(now)]
            for key in stale:
                del self._store[key]
            self._stats["evictions"] += len(stale)
            return len(stale)

    def stats(self) -> dict[str, Any]:
        """Counters, size and hit ratio (percentage)."""

        with self._lock:
            stats: dict[str, Any] = dict(self._stats)
            stats["size"] = len(self._store)
        total = stats["hits"] + stats["misses"]
        stats["hit_ratio"] = round(stats["hits"] / total * 100, 2) if total else 0.0
        stats["enabled"] = self.enabled
        return stats
