"""
Entity reconciliation: shadow users, relation diffs and whole-issue application.

Relations (assignees, labels, requested reviewers, collaborators) are never
cleared and reinserted. Only the computed delta is written so rows present on
both sides keep their identity and timestamps.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from mir_database.models import (
    IssueAssignee,
    IssueLabel,
    IssueRequestedReviewer,
    IssueSubscription,
    IssueType,
    Milestone,
    RepositoryCollaborator,
    User,
)
from mir_shared.constants import MAINTAINER_PERMISSIONS
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from mir_backend.core.clock import utcnow

from .payloads import GitHubCollaborator, GitHubIssue, GitHubPullRequest, GitHubUser
from .persistence import IssueSnapshot, MirrorPersistence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelationDelta:
    to_insert: frozenset
    to_delete: frozenset

    @property
    def changed(self) -> bool:
        return bool(self.to_insert or self.to_delete)


def compute_delta(local: set, remote: set) -> RelationDelta:
    """Members only in remote are inserted, only in local deleted; the rest untouched"""
    return RelationDelta(
        to_insert=frozenset(remote - local),
        to_delete=frozenset(local - remote),
    )


@dataclass
class IssueChange:
    """What an issue upsert changed, used to decide which notifications fire"""
    issue_id: int
    number: int
    pull_request: bool
    created: bool
    author_id: int | None
    state: str
    previous: IssueSnapshot | None
    merged: bool
    draft: bool
    added_assignee_ids: frozenset = field(default_factory=frozenset)
    added_reviewer_ids: frozenset = field(default_factory=frozenset)
    assignee_ids: frozenset = field(default_factory=frozenset)
    skipped_labels: int = 0

    @property
    def state_changed(self) -> bool:
        return self.previous is not None and self.previous.state != self.state

    @property
    def became_merged(self) -> bool:
        return self.merged and (self.previous is None or not self.previous.merged)

    @property
    def became_ready(self) -> bool:
        return self.previous is not None and self.previous.draft and not self.draft


class EntityReconciler:
    def __init__(self, session: AsyncSession, persistence: MirrorPersistence | None = None):
        self._session = session
        self._persistence = persistence or MirrorPersistence(session)

    @property
    def persistence(self) -> MirrorPersistence:
        return self._persistence

    async def ensure_user(self, remote: GitHubUser | None) -> int | None:
        """
        Returns the local id for a remote account, creating a shadow user on
        first sighting. Shadow users are refreshed on later sightings;
        registered users are never overwritten by mirrored data.
        """
        if remote is None:
            return None

        result = await self._session.exec(select(User).where(User.github_id == remote.id))
        user = result.first()

        if user is None:
            user = User(
                github_id=remote.id,
                login=remote.login,
                name=remote.name,
                email=remote.email,
                avatar_url=remote.avatar_url,
                registered=False,
            )
            self._session.add(user)
            await self._session.flush()
            return user.id

        if not user.registered:
            changed = False
            for column in ("login", "name", "email", "avatar_url"):
                value = getattr(remote, column)
                if value is not None and getattr(user, column) != value:
                    setattr(user, column, value)
                    changed = True
            if changed:
                user.updated_at = utcnow()
                await self._session.flush()

        return user.id

    async def subscribe_to_issue(self, issue_id: int, user_id: int | None) -> bool:
        """Idempotent; returns True when a new participation row was written"""
        if user_id is None:
            return False
        result = await self._session.exec(
            select(IssueSubscription).where(
                IssueSubscription.issue_id == issue_id,
                IssueSubscription.user_id == user_id,
            )
        )
        if result.first() is not None:
            return False
        self._session.add(IssueSubscription(issue_id=issue_id, user_id=user_id))
        await self._session.flush()
        return True

    async def _reconcile_members(self, model, issue_id: int, member_column: str, remote_ids: set[int]) -> RelationDelta:
        result = await self._session.exec(select(model).where(model.issue_id == issue_id))
        local_rows = {getattr(row, member_column): row for row in result.all()}

        delta = compute_delta(set(local_rows), remote_ids)

        for member_id in delta.to_delete:
            await self._session.delete(local_rows[member_id])
        for member_id in delta.to_insert:
            self._session.add(model(issue_id=issue_id, **{member_column: member_id}))

        if delta.changed:
            await self._session.flush()
        return delta

    async def reconcile_assignees(self, issue_id: int, remote: list[GitHubUser]) -> RelationDelta:
        user_ids = {await self.ensure_user(user) for user in remote}
        return await self._reconcile_members(IssueAssignee, issue_id, "user_id", user_ids)

    async def reconcile_requested_reviewers(self, issue_id: int, remote: list[GitHubUser]) -> RelationDelta:
        user_ids = {await self.ensure_user(user) for user in remote}
        return await self._reconcile_members(IssueRequestedReviewer, issue_id, "user_id", user_ids)

    async def reconcile_labels(self, issue_id: int, repository_id: int, remote_github_ids: set[int]) -> tuple[RelationDelta, int]:
        """Labels not mirrored yet are skipped; returns (delta, skipped count)"""
        local_ids = await self._persistence.local_label_ids(repository_id, remote_github_ids)
        skipped = remote_github_ids - set(local_ids)
        if skipped:
            logger.warning(
                f"Skipping {len(skipped)} unknown labels on issue {issue_id}",
                extra={"issue_id": issue_id, "label_github_ids": sorted(skipped)},
            )
        delta = await self._reconcile_members(IssueLabel, issue_id, "label_id", set(local_ids.values()))
        return delta, len(skipped)

    async def reconcile_collaborators(self, repository_id: int, remote: list[GitHubCollaborator]) -> tuple[RelationDelta, list[int]]:
        """Keeps only write-or-above collaborators; returns (delta, maintainer user ids)"""
        permissions: dict[int, str] = {}
        for collaborator in remote:
            permission = collaborator.highest_permission()
            if permission not in MAINTAINER_PERMISSIONS:
                continue
            user_id = await self.ensure_user(collaborator)
            permissions[user_id] = permission

        result = await self._session.exec(
            select(RepositoryCollaborator).where(RepositoryCollaborator.repository_id == repository_id)
        )
        local_rows = {row.user_id: row for row in result.all()}
        delta = compute_delta(set(local_rows), set(permissions))

        for user_id in delta.to_delete:
            await self._session.delete(local_rows[user_id])
        for user_id in delta.to_insert:
            self._session.add(
                RepositoryCollaborator(
                    repository_id=repository_id,
                    user_id=user_id,
                    permission=permissions[user_id],
                )
            )
        for user_id in set(local_rows) & set(permissions):
            if local_rows[user_id].permission != permissions[user_id]:
                local_rows[user_id].permission = permissions[user_id]

        await self._session.flush()
        return delta, list(permissions)

    async def _milestone_id(self, repository_id: int, payload: GitHubIssue) -> int | None:
        if payload.milestone is None:
            return None
        result = await self._session.exec(select(Milestone.id).where(Milestone.github_id == payload.milestone.id))
        milestone_id = result.first()
        if milestone_id is None:
            milestone, _ = await self._persistence.upsert_milestone(repository_id, payload.milestone)
            milestone_id = milestone.id
        return milestone_id

    async def _type_id(self, repository_id: int, payload: GitHubIssue) -> int | None:
        if payload.type is None:
            return None
        result = await self._session.exec(
            select(IssueType.id).where(
                IssueType.repository_id == repository_id,
                IssueType.github_id == payload.type.id,
            )
        )
        type_id = result.first()
        if type_id is None:
            issue_type, _ = await self._persistence.upsert_issue_type(repository_id, payload.type)
            type_id = issue_type.id
        return type_id

    async def apply_issue(
        self,
        repository_id: int,
        payload: GitHubIssue,
        *,
        mark_new_trivial_synced: bool = False,
        commit: bool = True,
    ) -> IssueChange:
        if not commit:
            return await self._apply_issue(repository_id, payload, mark_new_trivial_synced)

        try:
            change = await self._apply_issue(repository_id, payload, mark_new_trivial_synced)
            await self._session.commit()
            return change
        except IntegrityError:
            # A concurrent writer inserted the same entity; the retry takes the update path
            await self._session.rollback()
            logger.info(f"Retrying issue #{payload.number} after concurrent insert")
            change = await self._apply_issue(repository_id, payload, mark_new_trivial_synced)
            await self._session.commit()
            return change

    async def _apply_issue(
        self,
        repository_id: int,
        payload: GitHubIssue,
        mark_new_trivial_synced: bool,
    ) -> IssueChange:
        """
        Upserts an issue or pull request with all of its relations and
        participation rows. Committed as one unit when commit is set.

        mark_new_trivial_synced: a new open item without comments has no
        history to fetch, so it is stored as already synced.
        """
        author_id = await self.ensure_user(payload.user)
        closed_by_id = await self.ensure_user(payload.closed_by)
        merged_by_id = None
        if isinstance(payload, GitHubPullRequest):
            merged_by_id = await self.ensure_user(payload.merged_by)

        synced_on_insert = (
            mark_new_trivial_synced and payload.state == "open" and payload.comments == 0
        )

        issue, created, previous = await self._persistence.upsert_issue(
            repository_id,
            payload,
            user_id=author_id,
            milestone_id=await self._milestone_id(repository_id, payload),
            type_id=await self._type_id(repository_id, payload),
            closed_by_id=closed_by_id,
            merged_by_id=merged_by_id,
            synced_on_insert=synced_on_insert,
        )

        assignees = await self.reconcile_assignees(issue.id, payload.assignees)
        _, skipped_labels = await self.reconcile_labels(
            issue.id,
            repository_id,
            {label.id for label in payload.labels},
        )

        reviewers_added: frozenset = frozenset()
        if isinstance(payload, GitHubPullRequest):
            reviewers = await self.reconcile_requested_reviewers(issue.id, payload.requested_reviewers)
            reviewers_added = reviewers.to_insert

        assignee_ids = frozenset(
            (await self._session.exec(select(IssueAssignee.user_id).where(IssueAssignee.issue_id == issue.id))).all()
        )

        await self.subscribe_to_issue(issue.id, author_id)
        for user_id in assignees.to_insert | reviewers_added:
            await self.subscribe_to_issue(issue.id, user_id)

        change = IssueChange(
            issue_id=issue.id,
            number=issue.number,
            pull_request=issue.pull_request,
            created=created,
            author_id=author_id,
            state=issue.state,
            previous=previous,
            merged=issue.merged,
            draft=issue.draft,
            added_assignee_ids=assignees.to_insert,
            added_reviewer_ids=reviewers_added,
            assignee_ids=assignee_ids,
            skipped_labels=skipped_labels,
        )

        return change
