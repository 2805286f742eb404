from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass
class _Entry:
    value: Any
    expires_at: float


class TokenCache:
    """Small TTL map. Expired entries are dropped on read, on every write and by :meth:`evict_expired`."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else float(ttl_seconds)
        now = self._clock()
        with self._lock:
            self._evict_locked(now)
            self._entries[key] = _Entry(value=value, expires_at=now + ttl)

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return entry.value

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def pop(self, key: str) -> Any | None:
        value = self.get(key)
        with self._lock:
            self._entries.pop(key, None)
        return value

    def _evict_locked(self, now: float) -> int:
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def evict_expired(self) -> int:
        now = self._clock()
        with self._lock:
            return self._evict_locked(now)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        self.evict_expired()
        return len(self._entries)
