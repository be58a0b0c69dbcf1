"""
Shared expiring key-value store backed by Redis.

Replaces process-local maps so that every instance of the service sees the
same claims and counters. When Redis is unavailable every check answers
permissively; the database remains the source of truth.
"""
import time
import uuid
from typing import Optional

import redis.asyncio as redis
import structlog

from chainfund.core.config import get_settings

logger = structlog.get_logger(__name__)
settings = get_settings()


class SharedStore:
    """Redis client for cross-instance claims and rate limits"""

    def __init__(self):
        self.redis_client: Optional[redis.Redis] = None

    async def init_redis(self) -> redis.Redis:
        self.redis_client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        try:
            await self.redis_client.ping()
            logger.info("Redis connection established", redis_url=settings.redis_url)
            return self.redis_client
        except Exception as e:
            self.redis_client = None
            logger.error("Failed to connect to Redis", error=str(e))
            raise ConnectionError(f"Failed to connect to Redis: {e}")

    async def close(self):
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None
            logger.info("Redis connection closed")

    async def claim(self, key: str, ttl_seconds: int = 600) -> bool:
        """Claim a key for ttl_seconds; False if another holder has it"""
        if not self.redis_client:
            return True
        try:
            return bool(await self.redis_client.set(f"claim:{key}", "1", nx=True, ex=ttl_seconds))
        except Exception as e:
            logger.warning("Failed to claim key", key=key, error=str(e))
            return True

    async def release(self, key: str):
        if not self.redis_client:
            return
        try:
            await self.redis_client.delete(f"claim:{key}")
        except Exception as e:
            logger.warning("Failed to release claim", key=key, error=str(e))

    async def hit_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        """
        Record a hit in a sliding window. Returns True when the hit is over
        the limit.
        """
        if not self.redis_client:
            return False

        redis_key = f"rate_limit:{key}"
        now = time.time()
        try:
            pipe = self.redis_client.pipeline()
            pipe.zremrangebyscore(redis_key, 0, now - window_seconds)
            pipe.zcard(redis_key)
            pipe.zadd(redis_key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
            pipe.expire(redis_key, window_seconds)
            results = await pipe.execute()
            return results[1] >= limit
        except Exception as e:
            logger.warning("Rate limit check failed", key=key, error=str(e))
            return False

    async def ping(self) -> bool:
        if not self.redis_client:
            return False
        return bool(await self.redis_client.ping())


# Global store instance
shared_store = SharedStore()
