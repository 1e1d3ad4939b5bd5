"""Unit tests for the GitHub REST client"""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from mir_backend.ingestion.github_client import (
    GitHubAPIError,
    GitHubAuthError,
    GitHubNotFoundError,
    GitHubRateLimitError,
    GitHubRestClient,
)
from mir_backend.ingestion.rate_limiter import InMemoryQuotaLimiter

BASE_URL = "https://api.github.test"

RATE_HEADERS = {
    "x-ratelimit-remaining": "4999",
    "x-ratelimit-limit": "5000",
    "x-ratelimit-reset": "4102444800",
    "x-ratelimit-used": "1",
}


def _client_with(handler, limiter=None) -> GitHubRestClient:
    client = GitHubRestClient("ghp_test", base_url=BASE_URL, limiter=limiter)
    client._client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return client


@pytest.fixture(autouse=True)
def no_retry_sleep():
    with patch("mir_backend.ingestion.github_client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        yield mock_sleep


class TestGitHubExceptions:

    def test_api_error_preserves_status_code(self):
        error = GitHubAPIError("Server error", status_code=500)
        assert error.status_code == 500
        assert "Server error" in str(error)

    def test_server_error_is_transient(self):
        assert GitHubAPIError("boom", status_code=502).is_transient is True

    def test_network_error_is_transient(self):
        assert GitHubAPIError("timeout").is_transient is True

    def test_client_error_is_not_transient(self):
        assert GitHubAPIError("bad", status_code=422).is_transient is False

    def test_rate_limit_error_is_transient_and_keeps_reset(self):
        error = GitHubRateLimitError(reset_at=4102444800)
        assert error.is_transient is True
        assert error.reset_at == 4102444800

    def test_auth_and_not_found_are_permanent(self):
        assert GitHubAuthError().is_transient is False
        assert GitHubNotFoundError("/x").is_transient is False


class TestGitHubClientInit:

    def test_empty_token_raises_value_error(self):
        with pytest.raises(ValueError, match="required"):
            GitHubRestClient(token="")

    async def test_request_outside_context_raises(self):
        client = GitHubRestClient(token="ghp_test")

        with pytest.raises(RuntimeError, match="not initialized"):
            await client.get_json("/repos/octo/widgets")


class TestStatusMapping:

    async def test_401_raises_auth_error(self):
        client = _client_with(lambda request: httpx.Response(401))

        with pytest.raises(GitHubAuthError):
            await client.get_json("/user")

    async def test_404_raises_not_found(self):
        client = _client_with(lambda request: httpx.Response(404))

        with pytest.raises(GitHubNotFoundError):
            await client.get_json("/repos/octo/missing")

    async def test_403_with_exhausted_quota_raises_rate_limit(self):
        headers = {**RATE_HEADERS, "x-ratelimit-remaining": "0"}
        client = _client_with(lambda request: httpx.Response(403, headers=headers))

        with pytest.raises(GitHubRateLimitError) as exc:
            await client.get_json("/repos/octo/widgets")

        assert exc.value.reset_at == 4102444800

    async def test_403_with_quota_left_is_forbidden(self):
        client = _client_with(lambda request: httpx.Response(403, headers=RATE_HEADERS))

        with pytest.raises(GitHubAPIError) as exc:
            await client.get_json("/repos/octo/widgets/collaborators")

        assert not isinstance(exc.value, GitHubRateLimitError)
        assert exc.value.status_code == 403

    async def test_5xx_retried_then_raised(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502)

        client = _client_with(handler)

        with pytest.raises(GitHubAPIError) as exc:
            await client.get_json("/repos/octo/widgets")

        assert exc.value.status_code == 502
        assert len(calls) == GitHubRestClient.MAX_RETRIES

    async def test_5xx_then_success_returns_body(self):
        responses = iter([httpx.Response(503), httpx.Response(200, json={"ok": True})])
        client = _client_with(lambda request: next(responses))

        assert await client.get_json("/repos/octo/widgets") == {"ok": True}


class TestPagination:

    async def test_follows_next_links(self):
        def handler(request):
            if request.url.params.get("page") == "2":
                return httpx.Response(200, json=[{"id": 3, "name": "c"}])
            return httpx.Response(
                200,
                json=[{"id": 1, "name": "a"}, {"id": 2, "name": "b"}],
                headers={"link": f'<{BASE_URL}/repos/octo/widgets/labels?per_page=100&page=2>; rel="next"'},
            )

        client = _client_with(handler)

        labels = await client.list_labels("octo", "widgets")

        assert [label.id for label in labels] == [1, 2, 3]

    async def test_iter_issues_skips_pull_requests(self):
        items = [
            {"id": 1, "number": 1, "title": "Bug"},
            {"id": 2, "number": 2, "title": "Fix", "pull_request": {"url": "x"}},
        ]
        client = _client_with(lambda request: httpx.Response(200, json=items))

        numbers = [issue.number async for issue in client.iter_issues("octo", "widgets")]

        assert numbers == [1]

    async def test_issue_types_missing_for_user_accounts(self):
        client = _client_with(lambda request: httpx.Response(404))

        assert await client.list_issue_types("octo") == []


class TestQuotaTracking:

    async def test_headers_update_limiter(self):
        limiter = InMemoryQuotaLimiter()
        client = _client_with(lambda request: httpx.Response(200, json={}, headers=RATE_HEADERS), limiter)

        await client.get_json("/rate_limit")

        assert await limiter.get_remaining() == 4999
        assert client.get_rate_limit_remaining() == 4999

    async def test_missing_headers_leave_info_unset(self):
        client = _client_with(lambda request: httpx.Response(200, json={}))

        await client.get_json("/rate_limit")

        assert client.get_header_rate_limit_info() is None
