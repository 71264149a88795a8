"""
Entitlement Cache
=================

Optional Redis cache in front of ``get_subscription``.

With ``REDIS_URL`` unset every call is a no-op and reads go to the
database. Redis errors are logged and behave like a miss: the
subscription store is always the source of truth, the cache only
saves a query.

Key naming convention:
    cache:subscription:entitlement:{user_id}
"""

import json
import logging
from typing import Any, Optional
import uuid

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[Redis] = None


async def init_redis() -> Optional[Redis]:
    """
    Create the client and check it answers.

    Returns:
        The client, or None when caching is disabled.
    """
    global _redis_client

    if not settings.cache_enabled:
        logger.info("REDIS_URL not set, entitlement cache disabled")
        return None

    if _redis_client is None:
        client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            max_connections=20,
            socket_connect_timeout=2,
            socket_timeout=2,
            health_check_interval=30,
        )
        await client.ping()
        _redis_client = client
        logger.info("Redis connection established")

    return _redis_client


async def get_redis() -> Optional[Redis]:
    if not settings.cache_enabled:
        return None
    return _redis_client or await init_redis()


async def close_redis() -> None:
    global _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


class EntitlementCache:
    """Per-user cache of the best current subscription (or a "none" marker)."""

    @staticmethod
    def key(user_id: uuid.UUID | str) -> str:
        return f"cache:subscription:entitlement:{user_id}"

    @classmethod
    async def load(cls, user_id: uuid.UUID | str) -> Optional[Any]:
        """Cached JSON value for ``user_id``, or None on a miss or error."""
        key = cls.key(user_id)
        try:
            client = await get_redis()
            if client is None:
                return None
            raw = await client.get(key)
            return json.loads(raw) if raw is not None else None
        except (RedisError, OSError, ValueError) as e:
            logger.warning("Entitlement cache read failed for %s: %s", key, e)
            return None

    @classmethod
    async def store(cls, user_id: uuid.UUID | str, value: Any) -> bool:
        """Cache ``value`` for ``ENTITLEMENT_CACHE_TTL_SECONDS``."""
        key = cls.key(user_id)
        try:
            client = await get_redis()
            if client is None:
                return False
            await client.setex(
                key,
                settings.ENTITLEMENT_CACHE_TTL_SECONDS,
                json.dumps(value, default=str),
            )
            return True
        except (RedisError, OSError, TypeError) as e:
            logger.warning("Entitlement cache write failed for %s: %s", key, e)
            return False

    @classmethod
    async def invalidate(cls, user_id: uuid.UUID | str) -> bool:
        """
        Drop the cached entry after the lifecycle changed the user's
        subscription. Returns True if an entry was removed.
        """
        key = cls.key(user_id)
        try:
            client = await get_redis()
            if client is None:
                return False
            return bool(await client.delete(key))
        except (RedisError, OSError) as e:
            # Entry ages out after the TTL
            logger.warning("Entitlement cache invalidation failed for %s: %s", key, e)
            return False
