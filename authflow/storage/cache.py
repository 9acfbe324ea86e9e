from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, List, Optional, Protocol

from authflow.logging import get_logger

logger = get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ttl_until(expires_at: datetime, now: datetime) -> int:
    """Seconds from ``now`` until ``expires_at``, clamped to at least 1.

    Redis rejects zero or negative TTLs, and naive timestamps are treated as
    UTC.
    """
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return max(1, int((expires_at - now).total_seconds()))


class CacheBackend(Protocol):
    """Primitive key/value operations every cache store must provide.

    Values are strings; TTLs are whole seconds. ``incr_with_ttl`` and
    ``getdel`` must be atomic on the backend.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def expire(self, key: str, ttl: int) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def incr_with_ttl(self, key: str, ttl: int) -> int: ...

    async def getdel(self, key: str) -> Optional[str]: ...

    async def sadd(self, key: str, *members: str) -> int: ...

    async def srem(self, key: str, *members: str) -> int: ...

    async def smembers(self, key: str) -> set[str]: ...

    async def scan(self, pattern: str) -> List[str]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


@dataclass
class CacheEntry:
    """Envelope returned by :meth:`CacheGateway.get_cache`."""

    data: Any
    cached_at: datetime
    expires_at: datetime
    tags: List[str] = field(default_factory=list)


class CacheGateway:
    """Typed wrapper over a :class:`CacheBackend`.

    Adds the deployment key prefix, JSON (de)serialisation, ``{data, ...}``
    envelopes with tag indexes for bulk invalidation, and TTL helpers.
    Corrupt JSON is always treated as a cache miss.
    """

    def __init__(
        self,
        backend: CacheBackend,
        *,
        prefix: str = "",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.backend = backend
        self.prefix = prefix.rstrip(":")
        self._now = clock

    def key(self, key: str) -> str:
        return f"{self.prefix}:{key}" if self.prefix else key

    def _strip(self, full_key: str) -> str:
        if self.prefix and full_key.startswith(self.prefix + ":"):
            return full_key[len(self.prefix) + 1 :]
        return full_key

    # =========================================================================
    # Raw string values
    # =========================================================================

    async def get(self, key: str) -> Optional[str]:
        return await self.backend.get(self.key(key))

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        await self.backend.set(self.key(key), value, ttl)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.backend.delete(*(self.key(k) for k in keys))

    async def exists(self, key: str) -> bool:
        return await self.backend.exists(self.key(key))

    async def expire(self, key: str, ttl: int) -> bool:
        return await self.backend.expire(self.key(key), ttl)

    async def ttl(self, key: str) -> int:
        return await self.backend.ttl(self.key(key))

    async def increment(self, key: str, ttl: int) -> int:
        """Atomically increment a counter, setting ``ttl`` when it is created."""
        return await self.backend.incr_with_ttl(self.key(key), ttl)

    async def scan(self, pattern: str) -> List[str]:
        keys = await self.backend.scan(self.key(pattern))
        return [self._strip(k) for k in keys]

    # =========================================================================
    # JSON values
    # =========================================================================

    async def get_json(self, key: str) -> Optional[Any]:
        raw = await self.backend.get(self.key(key))
        return self._decode(key, raw)

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await self.backend.set(self.key(key), json.dumps(value), ttl)

    async def pop_json(self, key: str) -> Optional[Any]:
        """Atomically read and delete a JSON value (single-use grants)."""
        raw = await self.backend.getdel(self.key(key))
        return self._decode(key, raw)

    @staticmethod
    def _decode(key: str, raw: Optional[str]) -> Optional[Any]:
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            # Corrupted cache entry - treat as cache miss
            logger.warning("cache_entry_corrupt", key=key)
            return None

    # =========================================================================
    # Sets
    # =========================================================================

    async def sadd(self, key: str, *members: str, ttl: Optional[int] = None) -> int:
        full = self.key(key)
        added = await self.backend.sadd(full, *members)
        if ttl:
            await self.backend.expire(full, ttl)
        return added

    async def srem(self, key: str, *members: str) -> int:
        return await self.backend.srem(self.key(key), *members)

    async def smembers(self, key: str) -> set[str]:
        return await self.backend.smembers(self.key(key))

    # =========================================================================
    # Envelopes and tags
    # =========================================================================

    async def set_cache(
        self,
        key: str,
        data: Any,
        ttl: int,
        *,
        tags: Iterable[str] = (),
    ) -> None:
        now = self._now()
        tag_list = list(tags)
        envelope = {
            "data": data,
            "cached_at": now.isoformat(),
            "expires_at": (now + timedelta(seconds=ttl)).isoformat(),
            "metadata": {"tags": tag_list},
        }
        await self.set_json(key, envelope, ttl)
        for tag in tag_list:
            await self._index_tag(tag, key, ttl)

    async def _index_tag(self, tag: str, key: str, ttl: int) -> None:
        tag_key = self.key(f"cache:tags:{tag}")
        full_key = self.key(key)
        # Drop members whose entries have already expired
        stale = [
            member
            for member in await self.backend.smembers(tag_key)
            if member != full_key and not await self.backend.exists(member)
        ]
        if stale:
            await self.backend.srem(tag_key, *stale)
        await self.backend.sadd(tag_key, full_key)
        # Never shorten the index below an entry it already tracks
        current = await self.backend.ttl(tag_key)
        if current < ttl:
            await self.backend.expire(tag_key, ttl)

    async def get_cache(self, key: str) -> Optional[CacheEntry]:
        envelope = await self.get_json(key)
        if envelope is None:
            return None
        try:
            entry = CacheEntry(
                data=envelope["data"],
                cached_at=datetime.fromisoformat(envelope["cached_at"]),
                expires_at=datetime.fromisoformat(envelope["expires_at"]),
                tags=list((envelope.get("metadata") or {}).get("tags") or []),
            )
        except (KeyError, TypeError, ValueError, AttributeError):
            logger.warning("cache_envelope_invalid", key=key)
            await self.delete(key)
            return None
        if entry.expires_at <= self._now():
            await self.delete(key)
            return None
        return entry

    async def invalidate_tag(self, tag: str) -> int:
        """Delete every entry indexed under ``tag``; returns entries removed."""
        tag_key = self.key(f"cache:tags:{tag}")
        members = await self.backend.smembers(tag_key)
        removed = 0
        if members:
            removed = await self.backend.delete(*members)
        await self.backend.delete(tag_key)
        logger.debug("cache_tag_invalidated", tag=tag, removed=removed)
        return removed

    async def ping(self) -> bool:
        return await self.backend.ping()

    async def close(self) -> None:
        await self.backend.close()
