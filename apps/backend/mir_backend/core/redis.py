"""
Shared Redis connection for webhook delivery dedup and GitHub quota tracking.
Without REDIS_URL, or when Redis cannot be reached at first use, callers get
None and fall back to their in-memory implementations.
"""
import logging

import redis.asyncio as redis

from mir_backend.core.config import get_settings

logger = logging.getLogger(__name__)

_redis_client: redis.Redis | None = None
# None until the first connection attempt decides it
_redis_available: bool | None = None


async def _connect(url: str) -> redis.Redis | None:
    client = redis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    try:
        await client.ping()
    except (redis.RedisError, OSError) as e:
        logger.warning(f"Redis unreachable ({e}); delivery dedup and quota tracking stay in memory")
        await client.aclose()
        return None
    return client


async def get_redis() -> redis.Redis | None:
    """Returns the shared client, connecting on first call."""
    global _redis_client, _redis_available

    if _redis_available is False:
        return None
    if _redis_client is not None:
        return _redis_client

    url = get_settings().redis_url
    if not url:
        logger.warning("REDIS_URL not set; delivery dedup and quota tracking stay in memory")
        _redis_available = False
        return None

    _redis_client = await _connect(url)
    _redis_available = _redis_client is not None
    if _redis_available:
        logger.info("Connected to Redis")
    return _redis_client


async def close_redis() -> None:
    """Closes the shared client on app shutdown."""
    global _redis_client, _redis_available

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        _redis_available = None
        logger.info("Redis connection closed")


def reset_redis_for_testing() -> None:
    global _redis_client, _redis_available
    _redis_client = None
    _redis_available = None
