"""Unit tests for relation diffs, shadow users and whole-issue application"""

from mir_database.models import Issue, IssueAssignee, IssueLabel, IssueSubscription, Label, User
from sqlmodel import select

from mir_backend.ingestion.payloads import GitHubCollaborator, GitHubIssue, GitHubPullRequest, GitHubUser
from mir_backend.ingestion.reconciler import EntityReconciler, compute_delta


def _issue(number: int = 1, **fields) -> GitHubIssue:
    payload = {
        "id": 9000 + number,
        "number": number,
        "title": f"Issue {number}",
        "user": {"id": 1, "login": "author"},
        **fields,
    }
    return GitHubIssue.model_validate(payload)


class TestComputeDelta:

    def test_one_delete_one_insert_shared_untouched(self):
        delta = compute_delta({"A", "B", "C"}, {"B", "C", "D"})

        assert delta.to_delete == frozenset({"A"})
        assert delta.to_insert == frozenset({"D"})

    def test_inserts_only_remote_members(self):
        delta = compute_delta({1, 2}, {2, 3})

        assert delta.to_insert == frozenset({3})

    def test_deletes_only_local_members(self):
        delta = compute_delta({1, 2}, {2, 3})

        assert delta.to_delete == frozenset({1})

    def test_identical_sets_are_unchanged(self):
        delta = compute_delta({4, 5}, {4, 5})

        assert not delta.changed

    def test_empty_remote_deletes_everything(self):
        delta = compute_delta({1, 2}, set())

        assert delta.to_delete == frozenset({1, 2})
        assert delta.to_insert == frozenset()


class TestEnsureUser:

    async def test_creates_shadow_user_on_first_sighting(self, session):
        reconciler = EntityReconciler(session)

        user_id = await reconciler.ensure_user(GitHubUser(id=77, login="ghost"))

        user = await session.get(User, user_id)
        assert user.registered is False
        assert user.login == "ghost"

    async def test_same_remote_id_maps_to_same_user(self, session):
        reconciler = EntityReconciler(session)

        first = await reconciler.ensure_user(GitHubUser(id=77, login="ghost"))
        second = await reconciler.ensure_user(GitHubUser(id=77, login="ghost"))

        assert first == second

    async def test_shadow_user_login_refreshed(self, session):
        reconciler = EntityReconciler(session)
        user_id = await reconciler.ensure_user(GitHubUser(id=77, login="ghost"))

        await reconciler.ensure_user(GitHubUser(id=77, login="renamed"))

        assert (await session.get(User, user_id)).login == "renamed"

    async def test_registered_user_never_overwritten(self, session, seed):
        user_id = await seed.user("alice", registered=True, github_id=88)
        reconciler = EntityReconciler(session)

        await reconciler.ensure_user(GitHubUser(id=88, login="someone-else", name="Mallory"))

        user = await session.get(User, user_id)
        assert user.login == "alice"
        assert user.name is None

    async def test_none_returns_none(self, session):
        assert await EntityReconciler(session).ensure_user(None) is None


class TestApplyIssue:

    async def test_new_issue_is_created_with_author_participation(self, session, seed):
        repository_id = await seed.repository()
        reconciler = EntityReconciler(session)

        change = await reconciler.apply_issue(repository_id, _issue())

        assert change.created is True
        participants = (await session.exec(select(IssueSubscription.user_id))).all()
        assert participants == [change.author_id]

    async def test_reapplying_same_payload_is_idempotent(self, session, seed):
        repository_id = await seed.repository()
        reconciler = EntityReconciler(session)
        payload = _issue(assignees=[{"id": 2, "login": "bob"}])

        first = await reconciler.apply_issue(repository_id, payload)
        second = await reconciler.apply_issue(repository_id, payload)

        assert second.created is False
        assert second.issue_id == first.issue_id
        assert second.added_assignee_ids == frozenset()
        issues = (await session.exec(select(Issue))).all()
        assignees = (await session.exec(select(IssueAssignee))).all()
        assert len(issues) == 1
        assert len(assignees) == 1

    async def test_unchanged_assignee_keeps_row_identity(self, session, seed):
        repository_id = await seed.repository()
        reconciler = EntityReconciler(session)
        await reconciler.apply_issue(repository_id, _issue(assignees=[{"id": 2, "login": "bob"}]))
        kept_row_id = (await session.exec(select(IssueAssignee.id))).one()

        await reconciler.apply_issue(
            repository_id,
            _issue(assignees=[{"id": 2, "login": "bob"}, {"id": 3, "login": "carol"}]),
        )

        row_ids = set((await session.exec(select(IssueAssignee.id))).all())
        assert kept_row_id in row_ids
        assert len(row_ids) == 2

    async def test_removed_assignee_is_deleted(self, session, seed):
        repository_id = await seed.repository()
        reconciler = EntityReconciler(session)
        await reconciler.apply_issue(repository_id, _issue(assignees=[{"id": 2, "login": "bob"}]))

        change = await reconciler.apply_issue(repository_id, _issue(assignees=[]))

        assert change.assignee_ids == frozenset()
        assert (await session.exec(select(IssueAssignee))).all() == []

    async def test_unknown_labels_are_skipped(self, session, seed):
        repository_id = await seed.repository()
        session.add(Label(github_id=301, repository_id=repository_id, name="bug"))
        await session.commit()
        reconciler = EntityReconciler(session)

        change = await reconciler.apply_issue(
            repository_id,
            _issue(labels=[{"id": 301, "name": "bug"}, {"id": 302, "name": "unmirrored"}]),
        )

        assert change.skipped_labels == 1
        assert len((await session.exec(select(IssueLabel))).all()) == 1

    async def test_state_transition_is_reported(self, session, seed):
        repository_id = await seed.repository()
        reconciler = EntityReconciler(session)
        await reconciler.apply_issue(repository_id, _issue())

        change = await reconciler.apply_issue(repository_id, _issue(state="closed"))

        assert change.state_changed is True
        assert change.previous.state == "open"

    async def test_pull_request_merge_is_reported(self, session, seed):
        repository_id = await seed.repository()
        reconciler = EntityReconciler(session)
        base = {
            "id": 9100,
            "number": 5,
            "title": "Add widget",
            "user": {"id": 1, "login": "author"},
            "head": {"ref": "feature", "sha": "abc123"},
        }
        await reconciler.apply_issue(repository_id, GitHubPullRequest.model_validate(base))

        change = await reconciler.apply_issue(
            repository_id,
            GitHubPullRequest.model_validate({**base, "state": "closed", "merged": True}),
        )

        assert change.pull_request is True
        assert change.became_merged is True

    async def test_new_trivial_issue_marked_synced(self, session, seed):
        repository_id = await seed.repository()
        reconciler = EntityReconciler(session)

        change = await reconciler.apply_issue(repository_id, _issue(comments=0), mark_new_trivial_synced=True)

        issue = await session.get(Issue, change.issue_id)
        assert issue.synced is True
        assert issue.synced_at is not None

    async def test_new_issue_with_comments_not_marked_synced(self, session, seed):
        repository_id = await seed.repository()
        reconciler = EntityReconciler(session)

        change = await reconciler.apply_issue(repository_id, _issue(comments=3), mark_new_trivial_synced=True)

        assert (await session.get(Issue, change.issue_id)).synced is False


class TestReconcileCollaborators:

    async def test_only_maintainers_are_kept(self, session, seed):
        repository_id = await seed.repository()
        reconciler = EntityReconciler(session)
        remote = [
            GitHubCollaborator(id=10, login="admin", permissions={"admin": True, "push": True}),
            GitHubCollaborator(id=11, login="reader", permissions={"pull": True}),
        ]

        delta, maintainers = await reconciler.reconcile_collaborators(repository_id, remote)

        assert len(maintainers) == 1
        assert len(delta.to_insert) == 1

    async def test_departed_collaborator_is_removed(self, session, seed):
        repository_id = await seed.repository()
        reconciler = EntityReconciler(session)
        await reconciler.reconcile_collaborators(
            repository_id,
            [GitHubCollaborator(id=10, login="admin", permissions={"admin": True})],
        )

        delta, maintainers = await reconciler.reconcile_collaborators(repository_id, [])

        assert maintainers == []
        assert len(delta.to_delete) == 1
