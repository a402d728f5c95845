"""Redis-backed fixed-window rate limiter.

Uses INCR + EXPIRE for simple, performant rate limiting.
Guards recovery-token redemption so a leaked or guessed token cannot be
hammered.

Usage:
    from bookingflow.security.rate_limiter import RateLimiter

    limiter = RateLimiter(redis_client)
    allowed, retry_after = await limiter.check("rate:recovery:abc", limit=5, window=60)
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class RateLimiter:
    """Fixed-window rate limiter backed by Redis INCR + EXPIRE."""

    def __init__(self, redis: object) -> None:
        self._redis = redis

    async def check(self, key: str, limit: int, window: int) -> tuple[bool, int]:
        """Check if a request is within the rate limit.

        Args:
            key: Redis key (e.g. "rate:recovery:{token_hash}").
            limit: Max requests allowed in the window.
            window: Window size in seconds.

        Returns:
            (allowed, retry_after) — allowed is True if under limit,
            retry_after is seconds until window resets (0 if allowed).
        """
        try:
            count = await self._redis.incr(key)
            if count == 1:
                await self._redis.expire(key, window)

            if count > limit:
                ttl = await self._redis.ttl(key)
                retry_after = max(ttl, 1)
                return False, retry_after

            return True, 0
        except Exception:
            logger.exception("Rate limiter Redis error for key %s", key)
            # Fail open: token validation still applies when Redis is down
            return True, 0
