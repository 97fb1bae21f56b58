"""
Redis Cache Module

Query-result cache for the directory API.

Keys carry the scope and the active view version (``global:v7:...``), so
once a new version is swapped in, entries of the old one are simply never
read again and expire by TTL.
"""

import json
from typing import Any, Awaitable, Callable, Optional

import structlog
from redis.asyncio import Redis, ConnectionPool
from redis.exceptions import RedisError

from directory_sync.config import get_settings

logger = structlog.get_logger(__name__)

_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[Redis] = None


async def init_redis(url: Optional[str] = None) -> Redis:
    """Open the connection pool and verify the server answers."""
    global _redis_pool, _redis_client

    if _redis_client is not None:
        return _redis_client

    redis_settings = get_settings().redis
    pool = ConnectionPool.from_url(
        url or redis_settings.get_url(),
        max_connections=redis_settings.max_connections,
        socket_timeout=redis_settings.socket_timeout,
        decode_responses=redis_settings.decode_responses,
    )
    client = Redis(connection_pool=pool)

    try:
        await client.ping()
    except RedisError as e:
        logger.error("Redis connection failed", error=str(e))
        await pool.disconnect()
        raise

    _redis_pool, _redis_client = pool, client
    logger.info("Redis connection established")
    return client


async def close_redis() -> None:
    global _redis_pool, _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
    if _redis_pool is not None:
        await _redis_pool.disconnect()
    _redis_pool = _redis_client = None


def get_redis() -> Redis:
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def is_redis_ready() -> bool:
    return _redis_client is not None


class CacheManager:
    """
    Namespaced JSON cache in front of read-model queries.

    Example:
        cache = CacheManager("directory")
        categories = await cache.get_or_set("global:v7:categories", load_categories)
    """

    def __init__(self, namespace: str, default_ttl: int = 300):
        self.namespace = namespace
        self.default_ttl = default_ttl

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        raw = await get_redis().get(self._key(key))
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await get_redis().setex(self._key(key), ttl or self.default_ttl, json.dumps(value, default=str))

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl: Optional[int] = None,
    ) -> Any:
        """
        Return the cached value, computing and storing it on a miss.

        Redis errors and an uninitialized client fall through to the
        factory; results are then served uncached.
        """
        if not is_redis_ready():
            return await factory()

        try:
            cached = await self.get(key)
        except (RedisError, json.JSONDecodeError) as e:
            logger.warning("Cache read failed", namespace=self.namespace, key=key, error=str(e))
            cached = None

        if cached is not None:
            return cached

        value = await factory()
        try:
            await self.set(key, value, ttl)
        except (RedisError, TypeError) as e:
            logger.warning("Cache write failed", namespace=self.namespace, key=key, error=str(e))
        return value


directory_cache = CacheManager("directory", default_ttl=get_settings().directory.cache_ttl_seconds)
