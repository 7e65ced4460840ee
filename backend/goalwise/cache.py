"""Per-process TTL cache for market-data windows and owner dashboard views."""

from __future__ import annotations

import time
from threading import Lock
from typing import Any


class TTLCache:
    """
    String-keyed cache whose entries expire after a fixed number of seconds.

    Expired entries are dropped lazily on read and swept when the cache grows
    past `max_entries`; if it is still full, the entries closest to expiry go.
    """

    def __init__(self, default_ttl_seconds: int = 60, max_entries: int = 1024) -> None:
        self.default_ttl_seconds = max(1, default_ttl_seconds)
        self.max_entries = max(1, max_entries)
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= time.monotonic():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else max(1, ttl_seconds)
        now = time.monotonic()
        with self._lock:
            self._entries[key] = (now + ttl, value)
            if len(self._entries) > self.max_entries:
                self._evict(now)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _evict(self, now: float) -> None:
        for key in [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]:
            del self._entries[key]

        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            soonest = sorted(self._entries, key=lambda key: self._entries[key][0])[:overflow]
            for key in soonest:
                del self._entries[key]
