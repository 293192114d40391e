"""ARQ (Async Redis Queue) configuration for scheduled jobs."""

import logging

from arq.connections import RedisSettings

from reconciler.core.config import settings

logger = logging.getLogger(__name__)

RENEWAL_QUEUE_NAME = "reconciler:renewals"


def get_redis_settings() -> RedisSettings:
    """Get ARQ Redis settings from application config.

    Accepts the same ``redis://:password@host:port/db`` URL as the API.
    """
    return RedisSettings.from_dsn(settings.REDIS_URL)
