"""Per-page-view memory of the last redirect handled.

A browser replaying the same redirect (back button, double navigation) should
not trigger another gateway check. This layer only saves round trips;
TransitionGuard alone guarantees a transaction is settled once.
"""

import logging
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from reconciler.core.config import settings

logger = logging.getLogger(__name__)

REDIRECT_MEMORY_PREFIX = "reconcile:view"


class RedirectMemory:
    """Remembers the last tran_id handled for a page view."""

    async def last_handled(self, view_id: str) -> Optional[str]:
        raise NotImplementedError

    async def remember(self, view_id: str, tran_id: str) -> None:
        raise NotImplementedError

    async def already_handled(self, view_id: Optional[str], tran_id: str) -> bool:
        """True if this page view already handled tran_id."""
        if not view_id:
            return False
        return await self.last_handled(view_id) == tran_id


class LocalRedirectMemory(RedirectMemory):
    """In-process memory, for a single orchestrator lifetime."""

    def __init__(self) -> None:
        self._handled: dict[str, str] = {}

    async def last_handled(self, view_id: str) -> Optional[str]:
        return self._handled.get(view_id)

    async def remember(self, view_id: str, tran_id: str) -> None:
        self._handled[view_id] = tran_id


class RedisRedirectMemory(RedirectMemory):
    """Redis-backed memory with automatic TTL.

    Redis failures degrade to "not handled": the request goes through and the
    guard deals with any duplicate.
    """

    def __init__(self, redis_client: Redis, ttl_seconds: Optional[int] = None):
        """Initialize redirect memory.

        Args:
            redis_client: Redis client for storage
            ttl_seconds: Key lifetime (defaults to settings.REDIRECT_MEMORY_TTL_SECONDS)
        """
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds or settings.REDIRECT_MEMORY_TTL_SECONDS

    @staticmethod
    def _key(view_id: str) -> str:
        return f"{REDIRECT_MEMORY_PREFIX}:{view_id}"

    async def last_handled(self, view_id: str) -> Optional[str]:
        try:
            return await self.redis.get(self._key(view_id))
        except RedisError as e:
            logger.warning(f"Redirect memory unavailable, treating {view_id} as new: {e}")
            return None

    async def remember(self, view_id: str, tran_id: str) -> None:
        try:
            await self.redis.set(self._key(view_id), tran_id, ex=self.ttl_seconds)
        except RedisError as e:
            logger.warning(f"Could not remember redirect for view {view_id}: {e}")
