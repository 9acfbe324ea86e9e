from __future__ import annotations

from authflow.logging import get_logger
from authflow.service.errors import RateLimitedError
from authflow.storage.cache import CacheGateway

logger = get_logger(__name__)


class RateLimiter:
    """Fixed-window attempt counter per subject.

    The counter is created with an expiry equal to the window, so it resets
    on its own; increments are atomic on the cache store.
    """

    def __init__(
        self,
        cache: CacheGateway,
        *,
        max_attempts: int,
        window_seconds: int,
        namespace: str = "mfa:rate_limit",
    ) -> None:
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", window_seconds=window_seconds)
            window_seconds = 60
        self.cache = cache
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.namespace = namespace

    def _key(self, subject: str) -> str:
        return f"{self.namespace}:{subject}"

    async def check_and_increment(self, subject: str) -> int:
        """Record one attempt; raise once the window's ceiling is met.

        Returns the number of attempts left in the window after this one.
        A ceiling of zero or less disables limiting.
        """
        if self.max_attempts <= 0:
            return 0
        count = await self.cache.increment(self._key(subject), self.window_seconds)
        if count > self.max_attempts:
            retry_after = await self.cache.ttl(self._key(subject))
            logger.warning(
                "rate_limit_exceeded",
                subject=subject,
                namespace=self.namespace,
                attempts=count,
                max_attempts=self.max_attempts,
            )
            raise RateLimitedError(
                "Too many attempts. Please try again later.",
                detail={"retry_after": max(retry_after, 0), "max_attempts": self.max_attempts},
            )
        return self.max_attempts - count

    async def remaining(self, subject: str) -> int:
        raw = await self.cache.get(self._key(subject))
        used = int(raw) if raw else 0
        return max(0, self.max_attempts - used)

    async def reset(self, subject: str) -> None:
        await self.cache.delete(self._key(subject))
