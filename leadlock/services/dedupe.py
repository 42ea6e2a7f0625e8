from __future__ import annotations

import time
from threading import Lock
from typing import Callable

DEFAULT_TTL_SECONDS = 10 * 60
DEFAULT_HIGH_WATER = 200_000


class EventDedupeCache:
    """Short-lived set of event fingerprints, best-effort only.

    Entries expire ``ttl_seconds`` after first sight. Expired entries are only
    purged once the cache grows past ``high_water``; lookups ignore them anyway.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        high_water: int = DEFAULT_HIGH_WATER,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = Lock()
        self._ttl = float(ttl_seconds)
        self._high_water = high_water
        self._clock = clock
        self._entries: dict[str, float] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _fresh(self, fingerprint: str, now: float) -> bool:
        seen_at = self._entries.get(fingerprint)
        return seen_at is not None and now - seen_at < self._ttl

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, seen_at in self._entries.items() if now - seen_at >= self._ttl]
        for key in expired:
            del self._entries[key]

    def seen(self, fingerprint: str) -> bool:
        if not fingerprint:
            return False
        with self._lock:
            return self._fresh(fingerprint, self._clock())

    def check_and_remember(self, fingerprint: str) -> bool:
        """Return True if ``fingerprint`` is a duplicate, otherwise record it."""
        if not fingerprint:
            return False
        with self._lock:
            now = self._clock()
            if len(self._entries) > self._high_water:
                self._purge_expired(now)
            if self._fresh(fingerprint, now):
                return True
            self._entries[fingerprint] = now
            return False
