"""Unit tests for the checkpointed repository sync workflow and its lease"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from mir_database.models import Issue, Label, Repository, RepositorySubscription, SyncRun
from sqlmodel import select

from mir_backend.core.clock import utcnow
from mir_backend.core.errors import RepositoryAccessDeniedError, SyncInProgressError
from mir_backend.ingestion.github_client import GitHubAPIError, GitHubAuthError
from mir_backend.ingestion.payloads import (
    GitHubCollaborator,
    GitHubIssue,
    GitHubIssueType,
    GitHubLabel,
    GitHubMilestone,
    GitHubPullRequest,
    GitHubRepository,
)
from mir_backend.services.sync_service import (
    SYNC_STEPS,
    RepositorySyncWorkflow,
    SyncRunStatus,
    create_sync_run,
    find_interrupted_runs,
    get_sync_status,
    release_expired_leases,
    resume_sync_run,
    run_sync,
    start_repository_sync,
    sync_repository,
    try_acquire_sync_lease,
)

REQUESTER_GITHUB_ID = 1


class FakeGitHub:
    """Remote double; fail maps a method name to an error raised on its next calls"""

    def __init__(self, labels=None, collaborators=None):
        self.labels = labels if labels is not None else [GitHubLabel(id=1, name="bug")]
        self.collaborators = (
            collaborators
            if collaborators is not None
            else [GitHubCollaborator(id=REQUESTER_GITHUB_ID, login="alice", permissions={"push": True})]
        )
        self.fail: dict[str, list[Exception]] = {}
        self.calls: list[str] = []

    def _record(self, name: str) -> None:
        self.calls.append(name)
        errors = self.fail.get(name)
        if errors:
            raise errors.pop(0)

    async def get_repository(self, owner, repo):
        self._record("get_repository")
        return GitHubRepository(id=500, name=repo, full_name=f"{owner}/{repo}")

    async def list_collaborators(self, owner, repo):
        self._record("list_collaborators")
        return self.collaborators

    async def list_labels(self, owner, repo):
        self._record("list_labels")
        return self.labels

    async def list_milestones(self, owner, repo):
        self._record("list_milestones")
        return [GitHubMilestone(id=7, number=1, title="v1")]

    async def list_issue_types(self, org):
        self._record("list_issue_types")
        return [GitHubIssueType(id=3, name="Bug")]

    async def iter_issues(self, owner, repo):
        self._record("iter_issues")
        yield GitHubIssue(id=9001, number=1, title="Crash on start", user={"id": 2, "login": "reporter"})

    async def iter_pull_requests(self, owner, repo):
        self._record("iter_pull_requests")
        yield GitHubPullRequest(
            id=9002,
            number=2,
            title="Fix crash",
            user={"id": 2, "login": "reporter"},
            head={"ref": "fix", "sha": "abc123"},
        )


async def _run_row(session, run_id) -> SyncRun:
    result = await session.exec(select(SyncRun).where(SyncRun.id == run_id).execution_options(populate_existing=True))
    return result.one()


async def _syncing(session, full_name: str = "octo/widgets") -> bool:
    result = await session.exec(select(Repository.syncing).where(Repository.full_name == full_name))
    return result.one()


@pytest.fixture
async def requester(seed):
    return await seed.user("alice", github_id=REQUESTER_GITHUB_ID)


class TestRunSync:

    async def test_full_run_succeeds(self, session, requester):
        client = FakeGitHub()
        run_id = await create_sync_run(session, "octo", "widgets", requester)

        summary = await run_sync(session, client, run_id)

        assert summary.status == SyncRunStatus.SUCCEEDED.value
        assert summary.completed_steps == list(SYNC_STEPS)
        assert summary.step_results["issues"] == {"issues": 1, "pull_requests": 1, "skipped": 0}

        run = await _run_row(session, run_id)
        assert run.status == "succeeded"
        assert run.finished_at is not None
        assert run.current_step is None

    async def test_marks_repository_synced(self, session, requester):
        run_id = await create_sync_run(session, "octo", "widgets", requester)

        await run_sync(session, FakeGitHub(), run_id)

        result = await session.exec(select(Repository.last_synced_at, Repository.syncing))
        last_synced_at, syncing = result.one()
        assert last_synced_at is not None
        assert syncing is False

    async def test_mirrors_issues_and_pull_requests(self, session, requester):
        run_id = await create_sync_run(session, "octo", "widgets", requester)

        await run_sync(session, FakeGitHub(), run_id)

        result = await session.exec(select(Issue.number, Issue.pull_request).order_by(Issue.number))
        assert result.all() == [(1, False), (2, True)]

    async def test_requester_gets_default_subscription(self, session, requester):
        run_id = await create_sync_run(session, "octo", "widgets", requester)

        await run_sync(session, FakeGitHub(), run_id)

        result = await session.exec(
            select(RepositorySubscription).where(RepositorySubscription.user_id == requester)
        )
        subscription = result.one()
        assert subscription.issues is True
        assert subscription.activity is False

    async def test_removed_labels_are_deleted(self, session, requester):
        first = await create_sync_run(session, "octo", "widgets", requester)
        await run_sync(session, FakeGitHub(labels=[GitHubLabel(id=1, name="bug"), GitHubLabel(id=2, name="docs")]), first)

        second = await create_sync_run(session, "octo", "widgets", requester)
        await run_sync(session, FakeGitHub(labels=[GitHubLabel(id=1, name="bug")]), second)

        result = await session.exec(select(Label.name))
        assert result.all() == ["bug"]

    async def test_non_collaborator_requester_denied(self, session, requester):
        client = FakeGitHub(collaborators=[GitHubCollaborator(id=99, login="owner", permissions={"admin": True})])
        run_id = await create_sync_run(session, "octo", "widgets", requester)

        with pytest.raises(RepositoryAccessDeniedError):
            await run_sync(session, client, run_id)

        run = await _run_row(session, run_id)
        assert run.status == "failed"
        assert "RepositoryAccessDeniedError" in run.error
        assert await _syncing(session) is False

    async def test_forbidden_collaborator_listing_denied(self, session, requester):
        client = FakeGitHub()
        client.fail["list_collaborators"] = [GitHubAPIError("Forbidden", status_code=403)]
        run_id = await create_sync_run(session, "octo", "widgets", requester)

        with pytest.raises(RepositoryAccessDeniedError):
            await run_sync(session, client, run_id)

        assert await _syncing(session) is False

    @pytest.mark.parametrize(
        "failing",
        [
            "get_repository",
            "list_collaborators",
            "list_labels",
            "list_milestones",
            "list_issue_types",
            "iter_issues",
            "iter_pull_requests",
        ],
    )
    async def test_remote_failure_clears_syncing_flag(self, session, seed, requester, failing):
        repository_id = await seed.repository()
        client = FakeGitHub()
        client.fail[failing] = [GitHubAuthError()]
        run_id = await create_sync_run(session, "octo", "widgets", requester, repository_id)

        with pytest.raises(GitHubAuthError):
            await run_sync(session, client, run_id)

        assert await _syncing(session) is False
        run = await _run_row(session, run_id)
        assert run.status == "failed"
        assert "mark_synced" not in run.completed_steps

    @pytest.mark.parametrize("step", ["mark_synced", "subscription"])
    async def test_local_failure_clears_syncing_flag(self, session, seed, requester, step):
        repository_id = await seed.repository()
        run_id = await create_sync_run(session, "octo", "widgets", requester, repository_id)

        failing = AsyncMock(side_effect=RuntimeError("database unavailable"))
        with patch.object(RepositorySyncWorkflow, f"_step_{step}", failing):
            with pytest.raises(RuntimeError):
                await run_sync(session, FakeGitHub(), run_id)

        assert await _syncing(session) is False
        run = await _run_row(session, run_id)
        assert run.status == "failed"
        assert step not in run.completed_steps

    async def test_transient_error_retried_within_step(self, session, requester):
        client = FakeGitHub()
        client.fail["list_labels"] = [GitHubAPIError("Bad gateway", status_code=502)]
        run_id = await create_sync_run(session, "octo", "widgets", requester)

        with patch("mir_backend.services.sync_service.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            summary = await run_sync(session, client, run_id)

        assert summary.status == "succeeded"
        assert client.calls.count("list_labels") == 2
        assert client.calls.count("get_repository") == 1
        mock_sleep.assert_awaited_once()
        assert (await _run_row(session, run_id)).attempts == 1

    async def test_transient_error_gives_up_after_max_attempts(self, session, requester):
        client = FakeGitHub()
        client.fail["list_labels"] = [GitHubAPIError("Bad gateway", status_code=502) for _ in range(3)]
        run_id = await create_sync_run(session, "octo", "widgets", requester)

        with patch("mir_backend.services.sync_service.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(GitHubAPIError):
                await run_sync(session, client, run_id)

        assert client.calls.count("list_labels") == 3

    async def test_succeeded_run_is_not_repeated(self, session, requester):
        run_id = await create_sync_run(session, "octo", "widgets", requester)
        await run_sync(session, FakeGitHub(), run_id)

        client = FakeGitHub()
        summary = await run_sync(session, client, run_id)

        assert summary.status == "succeeded"
        assert client.calls == []


class TestResume:

    async def test_resume_skips_completed_steps(self, session, seed):
        repository_id = await seed.repository()
        run = SyncRun(
            owner="octo",
            repo="widgets",
            repository_id=repository_id,
            status="running",
            completed_steps=list(SYNC_STEPS[:6]),
            step_results={step: {} for step in SYNC_STEPS[:6]},
        )
        session.add(run)
        await session.commit()

        client = FakeGitHub()
        summary = await resume_sync_run(session, client, run.id)

        assert summary.status == "succeeded"
        assert summary.completed_steps == list(SYNC_STEPS)
        assert client.calls == ["iter_issues", "iter_pull_requests"]
        assert await _syncing(session) is False

    async def test_find_interrupted_runs(self, session):
        stale = SyncRun(owner="octo", repo="a", status="running", heartbeat_at=utcnow() - timedelta(hours=2))
        never = SyncRun(owner="octo", repo="b", status="running")
        live = SyncRun(owner="octo", repo="c", status="running", heartbeat_at=utcnow())
        done = SyncRun(owner="octo", repo="d", status="failed", heartbeat_at=utcnow() - timedelta(hours=2))
        session.add_all([stale, never, live, done])
        await session.commit()

        interrupted = await find_interrupted_runs(session)

        assert set(interrupted) == {stale.id, never.id}


class TestSyncLease:

    async def test_second_acquire_fails_while_held(self, session, seed):
        repository_id = await seed.repository()

        assert await try_acquire_sync_lease(session, repository_id) is True
        assert await try_acquire_sync_lease(session, repository_id) is False

    async def test_expired_lease_can_be_taken(self, session, seed):
        repository_id = await seed.repository()
        await try_acquire_sync_lease(session, repository_id)

        later = utcnow() + timedelta(hours=1)

        assert await try_acquire_sync_lease(session, repository_id, now=later) is True

    async def test_release_expired_leases(self, session, seed):
        held = await seed.repository("octo/held", github_id=501)
        await seed.repository(
            "octo/expired",
            github_id=502,
            syncing=True,
            sync_started_at=utcnow() - timedelta(hours=2),
        )
        await try_acquire_sync_lease(session, held)

        assert await release_expired_leases(session) == 1
        assert await _syncing(session, "octo/held") is True
        assert await _syncing(session, "octo/expired") is False


class TestLeaseOwnership:

    async def test_sync_repository_short_circuits_while_lease_held(self, session, seed, requester):
        repository_id = await seed.repository()
        assert await try_acquire_sync_lease(session, repository_id) is True
        client = FakeGitHub()

        summary = await sync_repository(session, client, "octo", "widgets", requester)

        assert summary.already_syncing is True
        assert summary.status == SyncRunStatus.SKIPPED.value
        assert summary.run_id is None
        assert client.calls == []
        assert await _syncing(session) is True
        assert (await session.exec(select(SyncRun))).all() == []

    async def test_sync_repository_claims_free_lease(self, session, seed, requester):
        await seed.repository()

        summary = await sync_repository(session, FakeGitHub(), "octo", "widgets", requester)

        assert summary.already_syncing is False
        assert summary.status == SyncRunStatus.SUCCEEDED.value
        assert await _syncing(session) is False

    async def test_resume_leaves_run_while_lease_held(self, session, seed):
        repository_id = await seed.repository()
        run = SyncRun(
            owner="octo",
            repo="widgets",
            repository_id=repository_id,
            status="running",
            completed_steps=list(SYNC_STEPS[:6]),
            step_results={step: {} for step in SYNC_STEPS[:6]},
        )
        session.add(run)
        await session.commit()
        assert await try_acquire_sync_lease(session, repository_id) is True
        client = FakeGitHub()

        summary = await resume_sync_run(session, client, run.id)

        assert summary.already_syncing is True
        assert client.calls == []
        assert await _syncing(session) is True
        row = await _run_row(session, run.id)
        assert row.status == "running"
        assert row.completed_steps == list(SYNC_STEPS[:6])

    async def test_resume_takes_over_expired_lease(self, session, seed):
        repository_id = await seed.repository(syncing=True, sync_started_at=utcnow() - timedelta(hours=2))
        run = SyncRun(
            owner="octo",
            repo="widgets",
            repository_id=repository_id,
            status="running",
            completed_steps=list(SYNC_STEPS[:6]),
            step_results={step: {} for step in SYNC_STEPS[:6]},
        )
        session.add(run)
        await session.commit()

        summary = await resume_sync_run(session, FakeGitHub(), run.id)

        assert summary.status == SyncRunStatus.SUCCEEDED.value
        assert await _syncing(session) is False

    async def test_repository_mirrored_meanwhile_keeps_other_lease(self, session, seed, requester):
        run_id = await create_sync_run(session, "octo", "widgets", requester)
        repository_id = await seed.repository()
        assert await try_acquire_sync_lease(session, repository_id) is True
        client = FakeGitHub()

        with pytest.raises(SyncInProgressError):
            await run_sync(session, client, run_id)

        assert client.calls == ["get_repository"]
        assert await _syncing(session) is True
        assert (await _run_row(session, run_id)).status == "failed"


class TestStartRepositorySync:

    async def test_starts_for_unknown_repository(self, session, requester):
        result = await start_repository_sync(session, "octo", "widgets", requester)

        assert result.started is True
        assert result.already_syncing is False
        assert result.previous_synced_at is None
        assert result.run_id is not None

    async def test_live_lease_reports_already_syncing(self, session, seed, requester):
        await seed.repository()

        first = await start_repository_sync(session, "octo", "widgets", requester)
        second = await start_repository_sync(session, "octo", "widgets", requester)

        assert first.started is True
        assert second.started is False
        assert second.already_syncing is True
        assert second.run_id is None


class TestGetSyncStatus:

    async def test_unknown_repository(self, session):
        assert await get_sync_status(session, "octo/missing") is None

    async def test_reports_latest_run(self, session, seed, requester):
        await seed.repository()
        result = await start_repository_sync(session, "octo", "widgets", requester)

        status = await get_sync_status(session, "octo/widgets")

        assert status.syncing is True
        assert status.latest_run.id == result.run_id
        assert status.latest_run.status == "pending"
