"""Redis client for short-lived caches"""
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
import json
from typing import Optional, Any
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

redis_client: Optional[redis.Redis] = None
redis_pool: Optional[ConnectionPool] = None


async def init_redis():
    """Create the Redis connection pool and client"""
    global redis_client, redis_pool

    redis_pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_keepalive=True,
        retry_on_timeout=True,
        health_check_interval=30,
    )
    redis_client = redis.Redis(connection_pool=redis_pool)

    try:
        await redis_client.ping()
        logger.info(f"Redis connected (pool max_connections={settings.REDIS_MAX_CONNECTIONS})")
    except (redis.ConnectionError, redis.TimeoutError) as e:
        # The API still serves without Redis; caches are skipped on error
        logger.error(f"Error connecting to Redis: {e}")


async def get_redis() -> redis.Redis:
    """Return the Redis client, creating it on first use"""
    if redis_client is None:
        await init_redis()
    return redis_client


async def close_redis():
    """Close the Redis client and pool"""
    global redis_client, redis_pool
    if redis_client:
        await redis_client.aclose()
        redis_client = None
    if redis_pool:
        await redis_pool.disconnect()
        redis_pool = None
    logger.info("Redis disconnected")


async def cache_get(key: str) -> Optional[Any]:
    """Read a cached value, decoding JSON when possible"""
    redis_conn = await get_redis()
    value = await redis_conn.get(key)
    if value:
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return None


async def cache_set(key: str, value: Any, expire: int = 3600):
    """Store a value with an expiry in seconds"""
    redis_conn = await get_redis()
    if isinstance(value, (dict, list)):
        value = json.dumps(value)
    await redis_conn.setex(key, expire, value)
