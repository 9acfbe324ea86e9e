from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    RedisError,
    ResponseError,
    TimeoutError as RedisTimeoutError,
)

from authflow.logging import get_logger
from authflow.service.errors import ServiceTimeoutError, ServiceUnavailableError

logger = get_logger(__name__)


class RedisCache:
    """Redis-backed cache store.

    Implements the :class:`authflow.storage.cache.CacheBackend` primitives.
    Every Redis failure is re-raised as :class:`ServiceUnavailableError`
    (or :class:`ServiceTimeoutError`) with the driver exception as cause.
    """

    # Atomic increment that arms the expiry only when the counter is created,
    # so the window is fixed from the first attempt and self-resets.
    _INCR_WITH_TTL_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 or redis.call('TTL', KEYS[1]) == -1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

    # Fallback for servers older than 6.2 that lack GETDEL
    _GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
  redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        connect_timeout: float = 10.0,
        retry_attempts: int = 3,
    ):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.connect_timeout = connect_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=connect_timeout,
            retry=Retry(ExponentialBackoff(), retry_attempts),
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
        )
        self._incr_with_ttl = self.client.register_script(self._INCR_WITH_TTL_SCRIPT)
        self._getdel_fallback = self.client.register_script(self._GETDEL_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        # Short-lived sync client so the async pool is not bound to a temporary loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.connect_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except RedisTimeoutError as exc:
            logger.error("redis_timeout", operation=operation, error=str(exc))
            raise ServiceTimeoutError(
                "Cache store timed out", detail={"operation": operation}, cause=exc
            ) from exc
        except RedisError as exc:
            logger.error("redis_error", operation=operation, error=str(exc))
            raise ServiceUnavailableError(
                "Cache store unavailable", detail={"operation": operation}, cause=exc
            ) from exc

    async def get(self, key: str) -> Optional[str]:
        async with self._guard("get"):
            return await self.client.get(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        async with self._guard("set"):
            await self.client.set(key, value, ex=ttl if ttl else None)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        async with self._guard("delete"):
            return int(await self.client.delete(*keys))

    async def exists(self, key: str) -> bool:
        async with self._guard("exists"):
            return bool(await self.client.exists(key))

    async def expire(self, key: str, ttl: int) -> bool:
        async with self._guard("expire"):
            return bool(await self.client.expire(key, max(1, int(ttl))))

    async def ttl(self, key: str) -> int:
        async with self._guard("ttl"):
            return int(await self.client.ttl(key))

    async def incr_with_ttl(self, key: str, ttl: int) -> int:
        async with self._guard("incr_with_ttl"):
            return int(await self._incr_with_ttl(keys=[key], args=[max(1, int(ttl))]))

    async def getdel(self, key: str) -> Optional[str]:
        """Atomically get and delete, so two callers cannot both consume a value."""
        async with self._guard("getdel"):
            try:
                return await self.client.getdel(key)
            except ResponseError:
                return await self._getdel_fallback(keys=[key])

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        async with self._guard("sadd"):
            return int(await self.client.sadd(key, *members))

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        async with self._guard("srem"):
            return int(await self.client.srem(key, *members))

    async def smembers(self, key: str) -> set[str]:
        async with self._guard("smembers"):
            return set(await self.client.smembers(key))

    async def scan(self, pattern: str) -> List[str]:
        async with self._guard("scan"):
            return [key async for key in self.client.scan_iter(match=pattern, count=200)]

    async def ping(self) -> bool:
        async with self._guard("ping"):
            return bool(await self.client.ping())

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
