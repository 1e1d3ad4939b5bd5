"""GitHub REST API client with Link-header pagination and quota tracking"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from .payloads import (
    GitHubCollaborator,
    GitHubComment,
    GitHubIssue,
    GitHubIssueType,
    GitHubLabel,
    GitHubMilestone,
    GitHubPullRequest,
    GitHubRepository,
    GitHubReview,
    GitHubReviewComment,
)

if TYPE_CHECKING:
    from .rate_limiter import RequestQuotaLimiter

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"


class GitHubAPIError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        """Network failures and 5xx are worth retrying; client errors are not"""
        return self.status_code is None or self.status_code >= 500


class GitHubRateLimitError(GitHubAPIError):
    def __init__(self, reset_at: int | None = None):
        super().__init__("GitHub API rate limit exceeded", status_code=403)
        self.reset_at = reset_at

    @property
    def is_transient(self) -> bool:
        return True


class GitHubAuthError(GitHubAPIError):
    def __init__(self):
        super().__init__("GitHub authentication failed", status_code=401)

    @property
    def is_transient(self) -> bool:
        return False


class GitHubNotFoundError(GitHubAPIError):
    def __init__(self, path: str):
        super().__init__(f"Not found: {path}", status_code=404)
        self.path = path

    @property
    def is_transient(self) -> bool:
        return False


@dataclass
class RateLimitInfo:
    remaining: int
    limit: int
    reset_at: int
    used: int


class GitHubRestClient:
    """Accepts optional RequestQuotaLimiter to coordinate quota usage across instances"""

    MAX_RETRIES: int = 3
    RETRY_DELAY_SECONDS: float = 1.0
    TIMEOUT_SECONDS: float = 30.0
    PER_PAGE: int = 100

    def __init__(
        self,
        token: str,
        base_url: str = GITHUB_API_URL,
        limiter: RequestQuotaLimiter | None = None,
    ):
        if not token:
            raise ValueError("GitHub token is required")

        self._token = token
        self._base_url = base_url.rstrip("/")
        self._limiter = limiter
        self._header_rate_limit: RateLimitInfo | None = None
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> GitHubRestClient:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(self.TIMEOUT_SECONDS),
            headers={
                "Authorization": f"Bearer {self._token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": GITHUB_API_VERSION,
            },
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        """Retries on transient failures; waits for quota if limiter is present"""
        if not self._client:
            raise RuntimeError("Client not initialized; use async context manager")

        if self._limiter:
            await self._limiter.wait_until_available()

        last_error: Exception | None = None

        for attempt in range(self.MAX_RETRIES):
            try:
                response = await self._client.get(path, params=params)
                await self._update_header_rate_limit(response)

                if response.status_code == 401:
                    raise GitHubAuthError()

                if response.status_code in (403, 429):
                    if response.status_code == 429 or (
                        self._header_rate_limit and self._header_rate_limit.remaining == 0
                    ):
                        reset_at = self._header_rate_limit.reset_at if self._header_rate_limit else None
                        raise GitHubRateLimitError(reset_at=reset_at)
                    raise GitHubAPIError("Forbidden", status_code=403)

                if response.status_code == 404:
                    raise GitHubNotFoundError(path)

                if response.status_code >= 500:
                    last_error = GitHubAPIError(
                        f"Server error: {response.status_code}",
                        status_code=response.status_code,
                    )
                    await asyncio.sleep(self.RETRY_DELAY_SECONDS * (attempt + 1))
                    continue

                if response.status_code >= 400:
                    raise GitHubAPIError(
                        f"Request failed: {response.status_code}",
                        status_code=response.status_code,
                    )

                return response

            except httpx.TimeoutException as e:
                last_error = GitHubAPIError(f"Request timeout: {e}")
                await asyncio.sleep(self.RETRY_DELAY_SECONDS * (attempt + 1))
            except httpx.RequestError as e:
                last_error = GitHubAPIError(f"Request failed: {e}")
                await asyncio.sleep(self.RETRY_DELAY_SECONDS * (attempt + 1))

        raise last_error or GitHubAPIError("Max retries exceeded")

    async def get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        response = await self._request(path, params)
        return response.json()

    async def paginate(self, path: str, params: dict[str, Any] | None = None) -> AsyncIterator[dict]:
        """Follows rel="next" Link headers until the last page"""
        page_params: dict[str, Any] | None = {"per_page": self.PER_PAGE, **(params or {})}
        next_url: str | None = path
        pages = 0

        while next_url:
            response = await self._request(next_url, page_params)
            pages += 1
            for item in response.json():
                yield item

            next_url = response.links.get("next", {}).get("url")
            # The next link already carries the query string
            page_params = None

        logger.debug(f"Paginated {path} across {pages} pages")

    async def list_all(self, path: str, params: dict[str, Any] | None = None) -> list[dict]:
        return [item async for item in self.paginate(path, params)]

    async def _update_header_rate_limit(self, response: httpx.Response) -> None:
        try:
            remaining = response.headers.get("x-ratelimit-remaining")
            limit = response.headers.get("x-ratelimit-limit")
            reset_at = response.headers.get("x-ratelimit-reset")
            used = response.headers.get("x-ratelimit-used")

            if all([remaining, limit, reset_at, used]):
                self._header_rate_limit = RateLimitInfo(
                    remaining=int(remaining),
                    limit=int(limit),
                    reset_at=int(reset_at),
                    used=int(used),
                )
        except (ValueError, TypeError):
            return

        if self._header_rate_limit is None:
            return

        if self._limiter:
            await self._limiter.set_remaining_from_response(
                self._header_rate_limit.remaining,
                self._header_rate_limit.reset_at,
            )

        # Only warn when rate limit is critically low to reduce log noise
        if self._header_rate_limit.remaining < 200:
            logger.warning(
                f"GitHub rate limit critically low: "
                f"{self._header_rate_limit.remaining}/{self._header_rate_limit.limit} remaining",
                extra={
                    "remaining": self._header_rate_limit.remaining,
                    "limit": self._header_rate_limit.limit,
                    "reset_at": self._header_rate_limit.reset_at,
                },
            )

    def get_rate_limit_remaining(self) -> int | None:
        if self._header_rate_limit:
            return self._header_rate_limit.remaining
        return None

    def get_header_rate_limit_info(self) -> RateLimitInfo | None:
        return self._header_rate_limit

    # Typed endpoints

    async def get_repository(self, owner: str, repo: str) -> GitHubRepository:
        data = await self.get_json(f"/repos/{owner}/{repo}")
        return GitHubRepository.model_validate(data)

    async def list_collaborators(self, owner: str, repo: str) -> list[GitHubCollaborator]:
        items = await self.list_all(f"/repos/{owner}/{repo}/collaborators", {"affiliation": "all"})
        return [GitHubCollaborator.model_validate(item) for item in items]

    async def list_labels(self, owner: str, repo: str) -> list[GitHubLabel]:
        items = await self.list_all(f"/repos/{owner}/{repo}/labels")
        return [GitHubLabel.model_validate(item) for item in items]

    async def list_milestones(self, owner: str, repo: str) -> list[GitHubMilestone]:
        items = await self.list_all(f"/repos/{owner}/{repo}/milestones", {"state": "all"})
        return [GitHubMilestone.model_validate(item) for item in items]

    async def list_issue_types(self, org: str) -> list[GitHubIssueType]:
        """Issue types only exist for organizations; user-owned repos have none"""
        try:
            items = await self.get_json(f"/orgs/{org}/issue-types")
        except GitHubNotFoundError:
            return []
        return [GitHubIssueType.model_validate(item) for item in items or []]

    async def iter_issues(self, owner: str, repo: str) -> AsyncIterator[GitHubIssue]:
        """Plain issues only; pull requests come from iter_pull_requests"""
        async for item in self.paginate(f"/repos/{owner}/{repo}/issues", {"state": "all"}):
            issue = GitHubIssue.model_validate(item)
            if issue.is_pull_request:
                continue
            yield issue

    async def iter_pull_requests(self, owner: str, repo: str) -> AsyncIterator[GitHubPullRequest]:
        async for item in self.paginate(f"/repos/{owner}/{repo}/pulls", {"state": "all"}):
            yield GitHubPullRequest.model_validate(item)

    async def get_issue(self, owner: str, repo: str, number: int) -> GitHubIssue:
        data = await self.get_json(f"/repos/{owner}/{repo}/issues/{number}")
        return GitHubIssue.model_validate(data)

    async def get_pull_request(self, owner: str, repo: str, number: int) -> GitHubPullRequest:
        data = await self.get_json(f"/repos/{owner}/{repo}/pulls/{number}")
        return GitHubPullRequest.model_validate(data)

    async def list_issue_comments(self, owner: str, repo: str, number: int) -> list[GitHubComment]:
        items = await self.list_all(f"/repos/{owner}/{repo}/issues/{number}/comments")
        return [GitHubComment.model_validate(item) for item in items]

    async def list_reviews(self, owner: str, repo: str, number: int) -> list[GitHubReview]:
        items = await self.list_all(f"/repos/{owner}/{repo}/pulls/{number}/reviews")
        return [GitHubReview.model_validate(item) for item in items]

    async def list_review_comments(self, owner: str, repo: str, number: int) -> list[GitHubReviewComment]:
        items = await self.list_all(f"/repos/{owner}/{repo}/pulls/{number}/comments")
        return [GitHubReviewComment.model_validate(item) for item in items]
