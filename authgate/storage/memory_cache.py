from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple


class MemoryCache:
    """Process-local stand-in for :class:`RedisCache`.

    Used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV. Counters and records
    live in a lock-guarded dict with absolute expiry timestamps taken from
    ``clock`` so tests can move time forward deterministically.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.monotonic
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    def verify_connection(self) -> None:
        return None

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (str(value), self._clock() + max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            self._entries.pop(key, None)
            return 1 if entry else 0

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            expires_at = entry[1]
            if expires_at is None:
                return -1
            return max(0, int(round(expires_at - self._clock())))

    async def incr_with_expiry(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                self._entries[key] = ("1", self._clock() + max(1, int(ttl_seconds)))
                return 1
            value, expires_at = entry
            count = int(value) + 1
            self._entries[key] = (str(count), expires_at)
            return count

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[0] != expected:
                return False
            del self._entries[key]
            return True

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
