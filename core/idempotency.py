"""
Idempotency guard for externally-delivered events.

A key is created with SET NX EX: whichever request creates it owns the
side effects; every later delivery of the same event sees the key and
skips them. No other locking is involved.
"""
from typing import Optional

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger(__name__)


class IdempotencyGuard:
    """Create-if-absent keys with a TTL, stored in Redis."""

    def __init__(self, redis_client: aioredis.Redis, ttl_seconds: int = 86400):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def webhook_key(provider_payment_id: str) -> str:
        return f"payment:webhook:{provider_payment_id}"

    async def claim(self, key: str, ttl_seconds: Optional[int] = None) -> bool:
        """
        Atomically create ``key`` if it does not exist.

        Returns:
            bool: True if this call created the key, False if it already existed

        Raises:
            redis.RedisError: If Redis is unavailable
        """
        created = await self.redis.set(key, "1", ex=ttl_seconds or self.ttl_seconds, nx=True)
        if not created:
            logger.info("idempotency_key_exists", key=key)
            return False
        return True

    async def exists(self, key: str) -> bool:
        return bool(await self.redis.exists(key))
