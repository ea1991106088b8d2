"""Optional Redis connection for event fan-out."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import redis.asyncio as aioredis
from redis.exceptions import RedisError

if TYPE_CHECKING:
    from cabinet.config import Settings

logger = logging.getLogger(__name__)


async def connect_redis(settings: Settings) -> aioredis.Redis | None:
    """Connect and ping Redis.

    Returns None when ``redis_url`` is blank or the server does not answer;
    events then stay in-process.
    """
    if not settings.redis_url:
        return None
    client: aioredis.Redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError) as exc:
        logger.warning("redis unavailable at %s, events stay in-process: %s", settings.redis_url, exc)
        await client.aclose()
        return None
    logger.info("connected to redis at %s", settings.redis_url)
    return client
