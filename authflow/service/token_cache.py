from __future__ import annotations

import time
from datetime import datetime
from typing import Callable, List, Optional

from authflow.logging import get_logger
from authflow.service.codes import token_digest
from authflow.service.errors import ServiceUnavailableError, TokenInvalidError
from authflow.service.events import AuthEvent, EventBus, EventType
from authflow.service.identity import IdentityProvider
from authflow.service.results import TokenValidationResult
from authflow.storage.cache import CacheGateway, ttl_until, utcnow
from authflow.storage.models import UserInfo

logger = get_logger(__name__)


def user_tag(user_id: str) -> str:
    return f"user:{user_id}"


class TokenCache:
    """Memoizes token introspection and user profile/role lookups.

    Cache read/write failures degrade to a miss so a struggling cache store
    only costs latency, never a wrong answer.
    """

    def __init__(
        self,
        cache: CacheGateway,
        identity: IdentityProvider,
        events: EventBus,
        *,
        ttl_seconds: int = 3600,
        enabled: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.identity = identity
        self.events = events
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled
        self._now = clock

    @staticmethod
    def _validation_key(token: str) -> str:
        return f"auth:token:validation:{token_digest(token)}"

    async def _read(self, key: str):
        if not self.enabled:
            return None
        try:
            return await self.cache.get_cache(key)
        except ServiceUnavailableError as exc:
            logger.warning("token_cache_read_failed", key=key, error=exc.message)
            return None

    async def _write(self, key: str, data, ttl: int, tags: List[str]) -> None:
        if not self.enabled:
            return
        try:
            await self.cache.set_cache(key, data, ttl, tags=tags)
        except ServiceUnavailableError as exc:
            logger.warning("token_cache_write_failed", key=key, error=exc.message)

    async def validate(self, token: str) -> TokenValidationResult:
        started = time.perf_counter()
        if not token:
            return TokenValidationResult.invalid("Token is missing")

        key = self._validation_key(token)
        entry = await self._read(key)
        if entry is not None:
            result = TokenValidationResult.from_dict(entry.data)
            await self._emit(result, started, cached=True)
            return result

        try:
            introspection = await self.identity.validate_token(token)
        except TokenInvalidError as exc:
            result = TokenValidationResult.invalid(exc.message)
            await self._emit(result, started, cached=False)
            return result

        result = TokenValidationResult.from_user(introspection.user, introspection.expires_at)
        ttl = self.ttl_seconds
        if introspection.expires_at is not None:
            ttl = min(ttl, ttl_until(introspection.expires_at, self._now()))
        await self._write(key, result.to_dict(), ttl, [user_tag(result.user_id)])
        await self._emit(result, started, cached=False)
        return result

    async def _emit(self, result: TokenValidationResult, started: float, *, cached: bool) -> None:
        await self.events.publish(
            AuthEvent(
                type=EventType.TOKEN_VALIDATION,
                user_id=result.user_id,
                success=result.valid,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                error=result.error,
                details={"cached": cached},
            )
        )

    async def get_user_info(self, user_id: str) -> UserInfo:
        key = f"auth:user:info:{user_id}"
        entry = await self._read(key)
        if entry is not None:
            return UserInfo.from_dict(entry.data)
        user = await self.identity.get_user_info(user_id)
        await self._write(key, user.to_dict(), self.ttl_seconds, [user_tag(user_id)])
        return user

    async def get_user_roles(self, user_id: str) -> List[str]:
        key = f"auth:user:roles:{user_id}"
        entry = await self._read(key)
        if entry is not None:
            return list(entry.data)
        roles = await self.identity.get_roles(user_id)
        await self._write(key, roles, self.ttl_seconds, [user_tag(user_id)])
        return roles

    async def invalidate_token(self, token: str) -> None:
        await self.cache.delete(self._validation_key(token))

    async def invalidate_user(self, user_id: str) -> int:
        """Drop every cached validation, profile and role entry for a user."""
        removed = await self.cache.invalidate_tag(user_tag(user_id))
        logger.info("token_cache_user_invalidated", user_id=user_id, removed=removed)
        return removed
