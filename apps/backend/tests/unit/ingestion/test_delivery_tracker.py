"""Unit tests for webhook delivery id tracking"""

import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mir_backend.ingestion.delivery_tracker import (
    DeliveryTracker,
    InMemoryDeliveryTracker,
    RedisDeliveryTracker,
    create_delivery_tracker,
)


class TestDeliveryTrackerInterface:

    def test_interface_cannot_be_instantiated(self):
        with pytest.raises(TypeError):
            DeliveryTracker()

    def test_subclass_missing_remember_cannot_be_instantiated(self):
        class SeenOnly(DeliveryTracker):
            async def seen(self, delivery_id: str) -> bool:
                return False

        with pytest.raises(TypeError):
            SeenOnly()


class TestInMemoryDeliveryTracker:

    async def test_unknown_delivery_not_seen(self):
        tracker = InMemoryDeliveryTracker(ttl_seconds=60)
        assert await tracker.seen("d-1") is False

    async def test_remembered_delivery_is_seen(self):
        tracker = InMemoryDeliveryTracker(ttl_seconds=60)
        await tracker.remember("d-1")
        assert await tracker.seen("d-1") is True

    async def test_expired_delivery_not_seen(self):
        tracker = InMemoryDeliveryTracker(ttl_seconds=60)
        await tracker.remember("d-1")

        with patch("mir_backend.ingestion.delivery_tracker.time.time", return_value=time.time() + 120):
            assert await tracker.seen("d-1") is False

    async def test_oldest_entries_evicted_past_capacity(self):
        tracker = InMemoryDeliveryTracker(ttl_seconds=60)
        tracker.MAX_ENTRIES = 2

        for delivery_id in ("d-1", "d-2", "d-3"):
            await tracker.remember(delivery_id)

        assert await tracker.seen("d-1") is False
        assert await tracker.seen("d-3") is True


class TestRedisDeliveryTracker:

    async def test_remember_sets_key_with_ttl(self):
        redis_client = MagicMock()
        redis_client.set = AsyncMock()
        tracker = RedisDeliveryTracker(redis_client, ttl_seconds=300)

        await tracker.remember("d-1")

        redis_client.set.assert_awaited_once_with("webhook:delivery:d-1", 1, ex=300, nx=True)

    async def test_seen_checks_key(self):
        redis_client = MagicMock()
        redis_client.exists = AsyncMock(return_value=1)
        tracker = RedisDeliveryTracker(redis_client, ttl_seconds=300)

        assert await tracker.seen("d-1") is True
        redis_client.exists.assert_awaited_once_with("webhook:delivery:d-1")


class TestCreateDeliveryTracker:

    def test_without_redis_uses_memory(self):
        assert isinstance(create_delivery_tracker(None), InMemoryDeliveryTracker)

    def test_with_redis_uses_redis(self):
        assert isinstance(create_delivery_tracker(MagicMock(), ttl_seconds=10), RedisDeliveryTracker)
