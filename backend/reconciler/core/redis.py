"""Shared Redis pool backing page-view redirect memory and the status endpoint.

Redis holds only best-effort state here (which tran_id a page view already
handled), so connection trouble is reported rather than raised.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from reconciler.core.config import settings

logger = logging.getLogger(__name__)


class RedisConnection:
    """Lazily created pool with short socket timeouts."""

    def __init__(self):
        self.pool: Optional[redis.ConnectionPool] = None
        self.client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        if self.pool is None:
            self.pool = redis.ConnectionPool.from_url(
                settings.REDIS_URL,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
                socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
                decode_responses=True,  # tran_ids come back as str
            )
            self.client = redis.Redis(connection_pool=self.pool)

    async def get_client(self) -> redis.Redis:
        if self.client is None:
            await self.connect()
        return self.client

    async def ping(self) -> bool:
        """Whether Redis answers; used by ``/api/v1/status``."""
        try:
            client = await self.get_client()
            return await client.ping()
        except (RedisError, OSError) as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None
        if self.pool:
            await self.pool.disconnect()
            self.pool = None


redis_conn = RedisConnection()


async def get_redis() -> redis.Redis:
    """FastAPI dependency returning the shared client."""
    return await redis_conn.get_client()


async def init_redis() -> None:
    await redis_conn.connect()


async def close_redis() -> None:
    await redis_conn.close()
