from __future__ import annotations

import fnmatch
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple, Union

from authflow.logging import get_logger

_Value = Union[str, set]


class MemoryCache:
    """In-process cache store for development and tests.

    Mirrors the :class:`~authflow.storage.redis_cache.RedisCache` primitives,
    including per-key expiry. Time comes from ``clock`` (seconds since the
    epoch) so expiry can be driven deterministically.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._data: Dict[str, Tuple[_Value, Optional[float]]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> Optional[_Value]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def _expiry(self, key: str) -> Optional[float]:
        entry = self._data.get(key)
        return entry[1] if entry else None

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            if isinstance(value, set):
                raise TypeError(f"{key} holds a set")
            return value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        with self._lock:
            expires_at = self._clock() + ttl if ttl else None
            self._data[key] = (value, expires_at)

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    del self._data[key]
                    removed += 1
        return removed

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def expire(self, key: str, ttl: int) -> bool:
        with self._lock:
            value = self._live(key)
            if value is None:
                return False
            self._data[key] = (value, self._clock() + max(1, int(ttl)))
            return True

    async def ttl(self, key: str) -> int:
        with self._lock:
            if self._live(key) is None:
                return -2
            expires_at = self._expiry(key)
            if expires_at is None:
                return -1
            return max(0, int(round(expires_at - self._clock())))

    async def incr_with_ttl(self, key: str, ttl: int) -> int:
        with self._lock:
            value = self._live(key)
            count = int(value) + 1 if value is not None else 1
            expires_at = self._expiry(key) if value is not None else None
            if expires_at is None:
                expires_at = self._clock() + max(1, int(ttl))
            self._data[key] = (str(count), expires_at)
            return count

    async def getdel(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            if value is None:
                return None
            del self._data[key]
            return value

    async def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            current = self._live(key)
            if current is None:
                current = set()
                self._data[key] = (current, None)
            before = len(current)
            current.update(members)
            return len(current) - before

    async def srem(self, key: str, *members: str) -> int:
        with self._lock:
            current = self._live(key)
            if not current:
                return 0
            removed = len(current & set(members))
            current.difference_update(members)
            if not current:
                del self._data[key]
            return removed

    async def smembers(self, key: str) -> set[str]:
        with self._lock:
            current = self._live(key)
            return set(current) if current else set()

    async def scan(self, pattern: str) -> List[str]:
        with self._lock:
            return [key for key in list(self._data) if fnmatch.fnmatchcase(key, pattern) and self._live(key) is not None]

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._data.clear()
        self.logger.debug("memory_cache_closed")
