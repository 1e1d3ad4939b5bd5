"""Tests for repository sync, subscription, issue and CI routes"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

from mir_backend.core.errors import (
    IssueNotFoundError,
    RepositoryAccessDeniedError,
    RepositoryNotFoundError,
    SyncInProgressError,
)
from mir_backend.services.ci_service import AggregatedStatus
from mir_backend.services.issue_service import IssueView, ResolutionView
from mir_backend.services.subscription_service import SubscriptionView
from mir_backend.services.sync_service import SyncStatus, SyncTriggerResult

ROUTES = "mir_backend.api.routes.repositories"
REPOSITORY = SimpleNamespace(id=3, full_name="octo/widgets", private=False)


def _view(**fields) -> IssueView:
    values = {
        "number": 5,
        "title": "Crash on start",
        "body": None,
        "state": "open",
        "state_reason": None,
        "pull_request": False,
        "draft": False,
        "merged": False,
        "locked": False,
        "html_url": None,
        "comment_count": 0,
        "author": "reporter",
        **fields,
    }
    return IssueView(**values)


def _subscription_view(preset: str = "custom") -> SubscriptionView:
    return SubscriptionView(
        repository_id=3,
        issues=True,
        pull_requests=True,
        releases=True,
        ci=True,
        mentions=True,
        activity=False,
        preset=preset,
    )


class TestRepositoryLifecycleRoutes:

    def test_delete_removes_repository(self, client, auth_headers):
        with patch(f"{ROUTES}.remove_repository", new_callable=AsyncMock, return_value="octo/widgets") as mock_remove:
            response = client.delete("/repositories/octo/widgets", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"success": True, "repository": "octo/widgets"}
        assert mock_remove.await_args.args[2:] == ("octo", "widgets", 7)

    def test_delete_without_upstream_access_is_403(self, client, auth_headers):
        with patch(
            f"{ROUTES}.remove_repository",
            new_callable=AsyncMock,
            side_effect=RepositoryAccessDeniedError("user 7 cannot read octo/widgets upstream"),
        ):
            response = client.delete("/repositories/octo/widgets", headers=auth_headers)

        assert response.status_code == 403

    def test_delete_unknown_repository_is_404(self, client, auth_headers):
        with patch(
            f"{ROUTES}.remove_repository",
            new_callable=AsyncMock,
            side_effect=RepositoryNotFoundError("octo/missing"),
        ):
            response = client.delete("/repositories/octo/missing", headers=auth_headers)

        assert response.status_code == 404

    def test_delete_while_syncing_is_409(self, client, auth_headers):
        with patch(
            f"{ROUTES}.remove_repository",
            new_callable=AsyncMock,
            side_effect=SyncInProgressError("octo/widgets"),
        ):
            response = client.delete("/repositories/octo/widgets", headers=auth_headers)

        assert response.status_code == 409


class TestSyncRoutes:

    def test_trigger_starts_background_run(self, client, auth_headers):
        run_id = uuid4()
        result = SyncTriggerResult(started=True, already_syncing=False, previous_synced_at=None, run_id=run_id)

        with (
            patch(f"{ROUTES}.start_repository_sync", new_callable=AsyncMock, return_value=result),
            patch(f"{ROUTES}.run_sync_in_background", new_callable=AsyncMock) as mock_run,
        ):
            response = client.post("/repositories/octo/widgets/sync", headers=auth_headers)

        assert response.status_code == 202
        assert response.json()["run_id"] == str(run_id)
        mock_run.assert_awaited_once_with(run_id, "gho_test")

    def test_trigger_while_syncing_does_not_start(self, client, auth_headers):
        result = SyncTriggerResult(started=False, already_syncing=True, previous_synced_at=None)

        with (
            patch(f"{ROUTES}.start_repository_sync", new_callable=AsyncMock, return_value=result),
            patch(f"{ROUTES}.run_sync_in_background", new_callable=AsyncMock) as mock_run,
        ):
            response = client.post("/repositories/octo/widgets/sync", headers=auth_headers)

        assert response.status_code == 202
        assert response.json()["already_syncing"] is True
        mock_run.assert_not_awaited()

    def test_status_of_unknown_repository_is_404(self, client, auth_headers):
        with patch(f"{ROUTES}.get_sync_status", new_callable=AsyncMock, return_value=None):
            response = client.get("/repositories/octo/missing/sync", headers=auth_headers)

        assert response.status_code == 404

    def test_status(self, client, auth_headers):
        status = SyncStatus(full_name="octo/widgets", syncing=False, last_synced_at=None, latest_run=None)

        with patch(f"{ROUTES}.get_sync_status", new_callable=AsyncMock, return_value=status):
            response = client.get("/repositories/octo/widgets/sync", headers=auth_headers)

        assert response.json()["full_name"] == "octo/widgets"

    def test_overlong_owner_rejected(self, client, auth_headers):
        response = client.get(f"/repositories/{'o' * 40}/widgets/sync", headers=auth_headers)

        assert response.status_code == 422


class TestSubscriptionRoutes:

    def test_private_repository_without_access_is_403(self, client, auth_headers):
        with patch(
            f"{ROUTES}.get_repository_for_user",
            new_callable=AsyncMock,
            side_effect=RepositoryAccessDeniedError("user 7 on octo/secret"),
        ):
            response = client.get("/repositories/octo/secret/subscription", headers=auth_headers)

        assert response.status_code == 403

    def test_missing_subscription_is_404(self, client, auth_headers):
        with (
            patch(f"{ROUTES}.get_repository_for_user", new_callable=AsyncMock, return_value=REPOSITORY),
            patch(f"{ROUTES}.get_subscription", new_callable=AsyncMock, return_value=None),
        ):
            response = client.get("/repositories/octo/widgets/subscription", headers=auth_headers)

        assert response.status_code == 404

    def test_patch_partial_update(self, client, auth_headers):
        with (
            patch(f"{ROUTES}.get_repository_for_user", new_callable=AsyncMock, return_value=REPOSITORY),
            patch(f"{ROUTES}.update_subscription", new_callable=AsyncMock) as mock_update,
            patch(f"{ROUTES}.to_view", return_value=_subscription_view()),
            patch(f"{ROUTES}.log_audit_event") as mock_audit,
        ):
            response = client.patch(
                "/repositories/octo/widgets/subscription",
                json={"ci": False},
                headers=auth_headers,
            )

        assert response.status_code == 200
        changes = mock_update.await_args.args[3]
        assert changes.model_dump(exclude_none=True) == {"ci": False}
        mock_audit.assert_called_once()

    def test_patch_unknown_preset_is_400(self, client, auth_headers):
        with (
            patch(f"{ROUTES}.get_repository_for_user", new_callable=AsyncMock, return_value=REPOSITORY),
            patch(f"{ROUTES}.apply_preset", new_callable=AsyncMock, side_effect=ValueError("Unknown preset: loud")),
        ):
            response = client.patch(
                "/repositories/octo/widgets/subscription",
                json={"preset": "loud"},
                headers=auth_headers,
            )

        assert response.status_code == 400

    def test_delete_missing_subscription_is_404(self, client, auth_headers):
        with (
            patch(f"{ROUTES}.get_repository_for_user", new_callable=AsyncMock, return_value=REPOSITORY),
            patch(f"{ROUTES}.delete_subscription", new_callable=AsyncMock, return_value=False),
        ):
            response = client.delete("/repositories/octo/widgets/subscription", headers=auth_headers)

        assert response.status_code == 404


class TestIssueRoutes:

    def test_unknown_repository_is_404(self, client, auth_headers):
        with patch(
            f"{ROUTES}.get_repository_for_user",
            new_callable=AsyncMock,
            side_effect=RepositoryNotFoundError("octo/missing"),
        ):
            response = client.get("/repositories/octo/missing/issues/5", headers=auth_headers)

        assert response.status_code == 404

    def test_stale_issue_refreshed_after_response(self, client, auth_headers):
        async def serve_stale(db, gh, full_name, number, schedule_refresh=None):
            schedule_refresh(REPOSITORY.id, full_name, number)
            return _view(stale=True)

        with (
            patch(f"{ROUTES}.get_repository_for_user", new_callable=AsyncMock, return_value=REPOSITORY),
            patch(f"{ROUTES}.get_issue", side_effect=serve_stale),
            patch(f"{ROUTES}.refresh_issue_in_background", new_callable=AsyncMock) as mock_refresh,
        ):
            response = client.get("/repositories/octo/widgets/issues/5", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["stale"] is True
        mock_refresh.assert_awaited_once_with(REPOSITORY.id, "octo/widgets", 5, "gho_test")

    def test_issue_number_must_be_positive(self, client, auth_headers):
        response = client.get("/repositories/octo/widgets/issues/0", headers=auth_headers)

        assert response.status_code == 422

    def test_issue_sync_returns_fresh_issue(self, client, auth_headers):
        with (
            patch(f"{ROUTES}.get_repository_for_user", new_callable=AsyncMock, return_value=REPOSITORY),
            patch(f"{ROUTES}.resync_issue", new_callable=AsyncMock, return_value=_view(comment_count=3)) as mock_resync,
            patch(f"{ROUTES}.log_audit_event") as mock_audit,
        ):
            response = client.post("/repositories/octo/widgets/issues/5/sync", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["comment_count"] == 3
        assert response.json()["stale"] is False
        assert mock_resync.await_args.args[2:] == ("octo/widgets", 5)
        mock_audit.assert_called_once()

    def test_issue_sync_of_unmirrored_issue_is_404(self, client, auth_headers):
        with (
            patch(f"{ROUTES}.get_repository_for_user", new_callable=AsyncMock, return_value=REPOSITORY),
            patch(f"{ROUTES}.resync_issue", new_callable=AsyncMock, side_effect=IssueNotFoundError("octo/widgets#9")),
        ):
            response = client.post("/repositories/octo/widgets/issues/9/sync", headers=auth_headers)

        assert response.status_code == 404

    def test_issue_sync_requires_access(self, client, auth_headers):
        with (
            patch(
                f"{ROUTES}.get_repository_for_user",
                new_callable=AsyncMock,
                side_effect=RepositoryAccessDeniedError("user 7 on octo/secret"),
            ),
            patch(f"{ROUTES}.resync_issue", new_callable=AsyncMock) as mock_resync,
        ):
            response = client.post("/repositories/octo/secret/issues/5/sync", headers=auth_headers)

        assert response.status_code == 403
        mock_resync.assert_not_awaited()

    def test_resolution(self, client, auth_headers):
        view = ResolutionView(status=None, confidence=None, analyzed_at=None, skipped=True, stale=False)

        with (
            patch(f"{ROUTES}.get_repository_for_user", new_callable=AsyncMock, return_value=REPOSITORY),
            patch(f"{ROUTES}.get_resolution", new_callable=AsyncMock, return_value=view),
        ):
            response = client.get("/repositories/octo/widgets/issues/5/resolution", headers=auth_headers)

        assert response.json()["skipped"] is True

    def test_ci_status(self, client, auth_headers):
        persistence = MagicMock()
        persistence.get_issue_by_number = AsyncMock(return_value=SimpleNamespace(id=11))
        status = AggregatedStatus(
            state="failure",
            label="1 failing",
            severity="error",
            animate=False,
            link="https://github.com/octo/widgets/actions/runs/1",
            total=2,
            running=0,
            passed=1,
            failed=1,
        )

        with (
            patch(f"{ROUTES}.get_repository_for_user", new_callable=AsyncMock, return_value=REPOSITORY),
            patch(f"{ROUTES}.MirrorPersistence", return_value=persistence),
            patch(f"{ROUTES}.get_issue_ci_status", new_callable=AsyncMock, return_value=status) as mock_ci,
        ):
            response = client.get("/repositories/octo/widgets/issues/5/ci", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["failed"] == 1
        mock_ci.assert_awaited_once()

    def test_ci_status_without_runs_is_null(self, client, auth_headers):
        persistence = MagicMock()
        persistence.get_issue_by_number = AsyncMock(return_value=SimpleNamespace(id=11))

        with (
            patch(f"{ROUTES}.get_repository_for_user", new_callable=AsyncMock, return_value=REPOSITORY),
            patch(f"{ROUTES}.MirrorPersistence", return_value=persistence),
            patch(f"{ROUTES}.get_issue_ci_status", new_callable=AsyncMock, return_value=None),
        ):
            response = client.get("/repositories/octo/widgets/issues/5/ci", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() is None


class TestHealth:

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}
