"""
Redis Client and JSON Cache
===========================

One lazily created Redis client is shared by the rate limiter and the
namespaced JSON cache that holds fetched signing key sets.

Keys look like ``cache:{namespace}:{name}``.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.asyncio import Redis

from entitlement_engine.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[Redis] = None


async def init_redis() -> Redis:
    """Create the shared client and verify the server answers."""
    global _redis_client

    if _redis_client is None:
        client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            max_connections=10,
            socket_connect_timeout=5,
            socket_timeout=5,
            health_check_interval=30,
        )
        await client.ping()
        _redis_client = client
        logger.info("Redis connection established")

    return _redis_client


async def get_redis() -> Redis:
    """Shared client, connecting on first use."""
    return _redis_client or await init_redis()


async def close_redis() -> None:
    global _redis_client

    if _redis_client is None:
        return

    await _redis_client.aclose()
    _redis_client = None
    logger.info("Redis connection closed")


class JsonCache:
    """
    JSON values under one key namespace.

    Redis errors are logged and reported as a miss (``get``) or as ``False``
    (``set``); the caller always has a source of truth to fall back on.
    """

    def __init__(self, namespace: str, default_ttl: int = 300):
        self.namespace = namespace
        self.default_ttl = default_ttl

    def key(self, name: str) -> str:
        return f"cache:{self.namespace}:{name}"

    async def get(self, name: str) -> Optional[Any]:
        key = self.key(name)
        try:
            client = await get_redis()
            raw = await client.get(key)
        except Exception as e:
            logger.warning("Cache read failed for %s: %s", key, e)
            return None

        if raw is None:
            return None

        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    async def set(self, name: str, value: Any, ttl: Optional[int] = None) -> bool:
        key = self.key(name)
        try:
            client = await get_redis()
            await client.setex(key, ttl or self.default_ttl, json.dumps(value))
        except Exception as e:
            logger.warning("Cache write failed for %s: %s", key, e)
            return False
        return True
