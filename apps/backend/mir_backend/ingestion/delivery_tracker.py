"""Fast-path memory of processed webhook delivery ids"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class DeliveryTracker(ABC):
    """
    Shortcut only: handlers stay idempotent, so a forgotten or evicted
    delivery id costs a redundant upsert and nothing else.
    """

    @abstractmethod
    async def seen(self, delivery_id: str) -> bool:
        pass

    @abstractmethod
    async def remember(self, delivery_id: str) -> None:
        pass


class InMemoryDeliveryTracker(DeliveryTracker):
    MAX_ENTRIES: int = 10_000

    def __init__(self, ttl_seconds: int):
        self._ttl = ttl_seconds
        self._expires: dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _evict_expired(self, now: float) -> None:
        """Must be called while holding _lock"""
        for delivery_id in [key for key, expires in self._expires.items() if expires <= now]:
            del self._expires[delivery_id]
        # dicts keep insertion order, so the oldest entries go first
        while len(self._expires) > self.MAX_ENTRIES:
            del self._expires[next(iter(self._expires))]

    async def seen(self, delivery_id: str) -> bool:
        async with self._lock:
            now = time.time()
            expires = self._expires.get(delivery_id)
            return expires is not None and expires > now

    async def remember(self, delivery_id: str) -> None:
        async with self._lock:
            now = time.time()
            self._expires[delivery_id] = now + self._ttl
            self._evict_expired(now)


class RedisDeliveryTracker(DeliveryTracker):
    """Shared across API instances; keys expire on their own"""

    KEY_PREFIX = "webhook:delivery:"

    def __init__(self, redis_client, ttl_seconds: int):
        self._redis = redis_client
        self._ttl = ttl_seconds

    async def seen(self, delivery_id: str) -> bool:
        return bool(await self._redis.exists(f"{self.KEY_PREFIX}{delivery_id}"))

    async def remember(self, delivery_id: str) -> None:
        await self._redis.set(f"{self.KEY_PREFIX}{delivery_id}", 1, ex=self._ttl, nx=True)


def create_delivery_tracker(redis_client=None, ttl_seconds: int = 86400) -> DeliveryTracker:
    """Uses Redis if available; otherwise in memory"""
    if redis_client:
        logger.info("Using Redis-backed webhook delivery tracker")
        return RedisDeliveryTracker(redis_client, ttl_seconds)

    logger.info("Using in-memory webhook delivery tracker (single instance only)")
    return InMemoryDeliveryTracker(ttl_seconds)
