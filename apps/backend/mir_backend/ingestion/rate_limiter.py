"""Request quota gate for the GitHub REST API"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class RequestQuotaLimiter(ABC):
    """Async interface supports both in memory and Redis implementations"""

    @abstractmethod
    async def wait_until_available(self) -> None:
        pass

    @abstractmethod
    async def get_remaining(self) -> int:
        pass

    @abstractmethod
    async def set_remaining_from_response(self, remaining: int, reset_at: int) -> None:
        pass


class InMemoryQuotaLimiter(RequestQuotaLimiter):
    """Uses lazy reset logic to avoid background timers"""

    HOURLY_QUOTA: int = 5000

    def __init__(self, initial_remaining: int | None = None):
        self._remaining = initial_remaining if initial_remaining is not None else self.HOURLY_QUOTA
        self._reset_at: float = 0.0
        self._lock = asyncio.Lock()

    def _maybe_reset_quota(self) -> None:
        """Must be called while holding _lock"""
        if self._reset_at > 0 and time.time() >= self._reset_at:
            self._remaining = self.HOURLY_QUOTA
            self._reset_at = 0.0

    async def wait_until_available(self) -> None:
        while True:
            async with self._lock:
                self._maybe_reset_quota()
                if self._remaining > 0:
                    return
                wait_seconds = max(0.0, self._reset_at - time.time()) if self._reset_at > 0 else 0.0
                if wait_seconds > 0:
                    logger.info(f"Rate limit exhausted, waiting {wait_seconds:.0f}s until reset")

            await asyncio.sleep(min(wait_seconds + 1, 60) if wait_seconds > 0 else 1.0)

    async def get_remaining(self) -> int:
        async with self._lock:
            self._maybe_reset_quota()
            return self._remaining

    async def set_remaining_from_response(self, remaining: int, reset_at: int) -> None:
        async with self._lock:
            self._remaining = remaining
            self._reset_at = float(reset_at)


class RedisQuotaLimiter(RequestQuotaLimiter):
    """Shares the observed quota across API and worker instances"""

    HOURLY_QUOTA: int = 5000
    REMAINING_KEY = "github:rest:remaining"
    RESET_AT_KEY = "github:rest:reset_at"

    def __init__(self, redis_client):
        self._redis = redis_client

    async def _check_and_reset_if_needed(self) -> None:
        reset_at = await self._redis.get(self.RESET_AT_KEY)
        if reset_at and time.time() >= int(reset_at):
            await self._redis.set(self.REMAINING_KEY, self.HOURLY_QUOTA)

    async def get_remaining(self) -> int:
        await self._check_and_reset_if_needed()
        remaining = await self._redis.get(self.REMAINING_KEY)
        return int(remaining) if remaining else self.HOURLY_QUOTA

    async def wait_until_available(self) -> None:
        while await self.get_remaining() <= 0:
            reset_at = await self._redis.get(self.RESET_AT_KEY)
            if reset_at:
                wait_seconds = max(0, int(reset_at) - time.time())
                if wait_seconds > 0:
                    await asyncio.sleep(min(wait_seconds + 1, 60))
                    continue
            await asyncio.sleep(1.0)

    async def set_remaining_from_response(self, remaining: int, reset_at: int) -> None:
        await self._redis.set(self.REMAINING_KEY, remaining)
        await self._redis.set(self.RESET_AT_KEY, reset_at)


def create_quota_limiter(redis_client=None) -> RequestQuotaLimiter:
    """Uses Redis if available; otherwise in memory"""
    if redis_client:
        logger.info("Using Redis-backed quota limiter")
        return RedisQuotaLimiter(redis_client)

    logger.info("Using in-memory quota limiter (single instance only)")
    return InMemoryQuotaLimiter()
