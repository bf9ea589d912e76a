"""
Redis shared cache tier.

WHAT:
    SharedCache implementation on redis.asyncio, used as the cross-process
    tier of the click cache.

WHY:
    Several API processes and the arq worker must see each other's clicks.
    The client is pooled and shared by the process; the click cache owns
    timeouts and treats any error here as a miss.

WHERE it's used:
    - clickcredit/main.py (lifespan builds it from REDIS_URL)
    - clickcredit/workers/arq_worker.py (worker startup)
"""

import logging
from typing import Optional

from redis.asyncio import ConnectionPool, Redis

from ..services.attribution.interfaces import SharedCache

logger = logging.getLogger(__name__)


class RedisSharedCache(SharedCache):
    """Byte-oriented get/set/delete with per-key TTL."""

    def __init__(self, client: Redis):
        self.client = client

    @classmethod
    def from_url(cls, redis_url: str, max_connections: int = 20) -> "RedisSharedCache":
        pool = ConnectionPool.from_url(
            redis_url,
            max_connections=max_connections,
            decode_responses=False,
        )
        logger.info("[STORE] Redis shared cache pool initialized (max_connections=%d)", max_connections)
        return cls(Redis(connection_pool=pool))

    async def get(self, key: str) -> Optional[bytes]:
        return await self.client.get(key)

    async def set_with_ttl(self, key: str, value: bytes, ttl_seconds: int) -> None:
        # Redis rejects non-positive expirations
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception as e:
            logger.warning("[STORE] Redis ping failed: %s", e)
            return False

    async def count_keys(self, prefix: str) -> int:
        count = 0
        async for _ in self.client.scan_iter(match=f"{prefix}*", count=500):
            count += 1
        return count

    async def close(self) -> None:
        await self.client.aclose()
