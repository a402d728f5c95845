"""Redis-backed RecoveryTokenStore.

Keys:
    recovery:token:{hash}  JSON-encoded RecoveryToken
    recovery:used:{hash}   ISO timestamp of consumption, set with NX

Both keys outlive the token's expiry by ``retention_seconds`` so a late
redemption reports ``token_expired`` instead of ``not_found``.
"""

from __future__ import annotations

import logging
from datetime import datetime

import redis.asyncio as aioredis

from bookingflow.schemas.booking import RecoveryToken
from bookingflow.storage.base import RecoveryTokenStore

logger = logging.getLogger(__name__)

TOKEN_KEY = "recovery:token:{}"
USED_KEY = "recovery:used:{}"
DEFAULT_RETENTION_SECONDS = 24 * 3600


class RedisRecoveryTokenStore(RecoveryTokenStore):
    def __init__(self, redis: aioredis.Redis, retention_seconds: int = DEFAULT_RETENTION_SECONDS) -> None:
        self._redis = redis
        self._retention = retention_seconds

    async def save(self, token: RecoveryToken) -> None:
        ttl = self._ttl(token, token.issued_at)
        await self._redis.set(TOKEN_KEY.format(token.token_hash), token.model_dump_json(), ex=ttl)

    async def get(self, token_hash: str) -> RecoveryToken | None:
        raw = await self._redis.get(TOKEN_KEY.format(token_hash))
        if raw is None:
            return None
        token = RecoveryToken.model_validate_json(raw)
        used = await self._redis.get(USED_KEY.format(token_hash))
        if used is not None:
            token = token.model_copy(update={"used_at": datetime.fromisoformat(used)})
        return token

    async def consume(self, token_hash: str, used_at: datetime) -> bool:
        token = await self.get(token_hash)
        if token is None or token.used_at is not None:
            return False
        won = await self._redis.set(
            USED_KEY.format(token_hash),
            used_at.isoformat(),
            nx=True,
            ex=self._ttl(token, used_at),
        )
        return bool(won)

    async def release(self, token_hash: str) -> None:
        await self._redis.delete(USED_KEY.format(token_hash))
        logger.info("Released recovery token %s… after failed redemption", token_hash[:8])

    def _ttl(self, token: RecoveryToken, now: datetime) -> int:
        remaining = int((token.expires_at - now).total_seconds())
        return max(remaining, 1) + self._retention
