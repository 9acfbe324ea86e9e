from __future__ import annotations

from typing import Optional

from authflow.logging import get_logger
from authflow.storage.cache import CacheGateway

logger = get_logger(__name__)


class SessionTracker:
    """Tracks identity-provider sessions per user for bulk revocation."""

    def __init__(self, cache: CacheGateway, *, ttl_seconds: int = 8 * 3600) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def record(self, session_id: str, user_id: str, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds or self.ttl_seconds
        await self.cache.set(f"auth:session:{session_id}", user_id, ttl)
        await self.cache.sadd(f"auth:user_sessions:{user_id}", session_id, ttl=ttl)

    async def get_session_user(self, session_id: str) -> Optional[str]:
        return await self.cache.get(f"auth:session:{session_id}")

    async def revoke(self, session_id: str) -> None:
        user_id = await self.get_session_user(session_id)
        await self.cache.delete(f"auth:session:{session_id}")
        if user_id:
            await self.cache.srem(f"auth:user_sessions:{user_id}", session_id)

    async def revoke_user_sessions(self, user_id: str, except_session_id: Optional[str] = None) -> int:
        """Revoke all tracked sessions for a user.

        Args:
            user_id: User whose sessions to revoke
            except_session_id: Optional session ID to keep active

        Returns:
            Number of sessions revoked
        """
        user_sessions_key = f"auth:user_sessions:{user_id}"
        session_ids = await self.cache.smembers(user_sessions_key)
        revoked = 0
        for session_id in session_ids:
            if session_id == except_session_id:
                continue
            await self.cache.delete(f"auth:session:{session_id}")
            await self.cache.srem(user_sessions_key, session_id)
            revoked += 1
        if revoked:
            logger.info("user_sessions_revoked", user_id=user_id, count=revoked)
        return revoked
