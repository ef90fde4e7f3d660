from __future__ import annotations

"""Fixed-window request admission per provider."""

from collections.abc import Callable
from dataclasses import dataclass
import threading
import time

WINDOW_SECONDS = 60.0


@dataclass(frozen=True)
class Admission:
    """Outcome of one ``admit`` call."""

    allowed: bool
    retry_after: float = 0.0


@dataclass
class _Window:
    start: float
    count: int = 0


class RateLimiter:
    """Counts admitted requests per provider in fixed 60 second windows.

    Each provider key has its own lock, so the check-and-increment in
    ``admit`` is exact under concurrency: N simultaneous callers against a
    limit of K are admitted exactly ``min(N, K)`` times.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def admit(self, provider: str, limit: int) -> Admission:
        """Consume one slot for ``provider`` if the current window allows it."""

        if limit < 1:
            raise ValueError("Rate limit must be a positive integer")

        key = str(getattr(provider, "value", provider))
        with self._lock_for(key):
            now = self._clock()
            window = self._windows.get(key)
            if window is None or now - window.start >= WINDOW_SECONDS:
                window = self._windows[key] = _Window(start=now)

            if window.count >= limit:
                retry_after = max(0.0, window.start + WINDOW_SECONDS - now)
                return Admission(allowed=False, retry_after=retry_after)

            window.count += 1
            return Admission(allowed=True)

    def usage(self) -> dict[str, int]:
        """Admitted count per provider in each provider's live window."""

        now = self._clock()
        with self._registry_lock:
            items = list(self._windows.items())
        return {
            key: window.count
            for key, window in items
            if now - window.start < WINDOW_SECONDS
        }

    def reset(self) -> None:
        """Forget all windows."""

        with self._registry_lock:
            self._windows.clear()
