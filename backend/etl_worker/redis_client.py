import logging

from redis.asyncio import ConnectionPool, Redis

from etl_worker.config import settings

logger = logging.getLogger(__name__)

_redis_pool: ConnectionPool | None = None
_redis_client: Redis | None = None


async def init_redis() -> Redis:
    """Create the shared pool and verify connectivity."""
    global _redis_pool, _redis_client
    if _redis_client is None:
        _redis_pool = ConnectionPool.from_url(
            settings.redis_url,
            max_connections=settings.redis_max_connections,
            decode_responses=True,
        )
        _redis_client = Redis(connection_pool=_redis_pool)
    await _redis_client.ping()
    logger.info("Redis pool initialised (%s)", settings.redis_url.rsplit("@", 1)[-1])
    return _redis_client


async def close_redis() -> None:
    global _redis_pool, _redis_client
    if _redis_client is not None:
        try:
            await _redis_client.aclose()
        except Exception as e:
            logger.warning("Redis client close failed: %s", e)
    if _redis_pool is not None:
        try:
            await _redis_pool.disconnect(inuse_connections=True)
        except Exception as e:
            logger.warning("Redis pool disconnect failed: %s", e)
    _redis_client = None
    _redis_pool = None


def get_redis() -> Redis:
    if _redis_client is None:
        raise RuntimeError("Redis client is not initialised")
    return _redis_client
