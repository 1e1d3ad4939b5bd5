"""Builds GitHub clients that share the process-wide quota limiter"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mir_backend.core.config import get_settings
from mir_backend.core.redis import get_redis

from .github_client import GitHubRestClient
from .rate_limiter import create_quota_limiter


@asynccontextmanager
async def open_github_client(token: str) -> AsyncIterator[GitHubRestClient]:
    settings = get_settings()
    limiter = create_quota_limiter(await get_redis())
    async with GitHubRestClient(token, base_url=settings.github_api_url, limiter=limiter) as client:
        yield client
