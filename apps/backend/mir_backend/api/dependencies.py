from collections.abc import AsyncGenerator

from fastapi import Depends
from mir_database.session import async_session_factory
from sqlmodel.ext.asyncio.session import AsyncSession

from mir_backend.core.config import get_settings
from mir_backend.core.redis import get_redis
from mir_backend.ingestion.client_factory import open_github_client
from mir_backend.ingestion.delivery_tracker import DeliveryTracker, create_delivery_tracker
from mir_backend.ingestion.github_client import GitHubRestClient
from mir_backend.middleware.auth import AuthContext, require_identity


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        yield session


async def get_github_client(
    identity: AuthContext = Depends(require_identity),
) -> AsyncGenerator[GitHubRestClient, None]:
    """Client authenticated as the caller; closed when the request ends"""
    async with open_github_client(identity.token) as client:
        yield client


_delivery_tracker: DeliveryTracker | None = None


async def get_delivery_tracker() -> DeliveryTracker:
    """Singleton so the in-memory fallback remembers across requests"""
    global _delivery_tracker
    if _delivery_tracker is None:
        _delivery_tracker = create_delivery_tracker(
            await get_redis(),
            ttl_seconds=get_settings().webhook_delivery_ttl_seconds,
        )
    return _delivery_tracker


def reset_delivery_tracker_for_testing() -> None:
    global _delivery_tracker
    _delivery_tracker = None
