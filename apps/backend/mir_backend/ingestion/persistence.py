"""Keyed upserts and cascading deletes for mirrored entities"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, TypeVar

from mir_database.models import (
    Installation,
    Issue,
    IssueAssignee,
    IssueComment,
    IssueLabel,
    IssueRequestedReviewer,
    IssueReview,
    IssueReviewComment,
    IssueSubscription,
    IssueType,
    Label,
    Milestone,
    Notification,
    Release,
    Repository,
    RepositoryCollaborator,
    RepositorySubscription,
    SyncRun,
    WorkflowRun,
)
from sqlalchemy import delete, update
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from mir_backend.core.clock import utcnow

from .payloads import (
    GitHubCheckRun,
    GitHubComment,
    GitHubInstallation,
    GitHubIssue,
    GitHubIssueType,
    GitHubLabel,
    GitHubMilestone,
    GitHubPullRequest,
    GitHubRelease,
    GitHubRepository,
    GitHubReview,
    GitHubReviewComment,
    GitHubWorkflowRun,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=SQLModel)


@dataclass(frozen=True)
class IssueSnapshot:
    """Issue fields compared before and after an upsert to detect visible transitions"""
    state: str
    merged: bool
    draft: bool


class MirrorPersistence:
    """
    Upserts keyed by remote id. Methods flush but never commit; callers commit
    once per entity so a crash never leaves an entity half applied.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def _find(self, model: type[ModelT], **criteria: Any) -> ModelT | None:
        statement = select(model)
        for column, value in criteria.items():
            statement = statement.where(getattr(model, column) == value)
        result = await self._session.exec(statement)
        return result.first()

    async def _upsert(
        self,
        model: type[ModelT],
        lookup: dict[str, Any],
        values: dict[str, Any],
        insert_only: dict[str, Any] | None = None,
    ) -> tuple[ModelT, bool]:
        """Returns (row, created); insert_only values are applied on first insert only"""
        row = await self._find(model, **lookup)
        created = row is None

        if row is None:
            row = model(**lookup, **values, **(insert_only or {}))
            self._session.add(row)
        else:
            for column, value in values.items():
                setattr(row, column, value)

        await self._session.flush()
        return row, created

    # Lookups

    async def get_repository_by_full_name(self, full_name: str) -> Repository | None:
        return await self._find(Repository, full_name=full_name)

    async def get_repository_by_github_id(self, github_id: int) -> Repository | None:
        return await self._find(Repository, github_id=github_id)

    async def get_issue_by_number(self, repository_id: int, number: int) -> Issue | None:
        return await self._find(Issue, repository_id=repository_id, number=number)

    async def get_installation_by_github_id(self, github_id: int) -> Installation | None:
        return await self._find(Installation, github_id=github_id)

    async def get_review_by_github_id(self, github_id: int) -> IssueReview | None:
        return await self._find(IssueReview, github_id=github_id)

    async def get_release_by_github_id(self, github_id: int) -> Release | None:
        return await self._find(Release, github_id=github_id)

    async def get_workflow_run_by_github_id(self, github_id: int) -> WorkflowRun | None:
        return await self._find(WorkflowRun, github_id=github_id)

    async def pull_request_id_for_sha(self, repository_id: int, head_sha: str) -> int | None:
        result = await self._session.exec(
            select(Issue.id).where(
                Issue.repository_id == repository_id,
                Issue.pull_request.is_(True),
                Issue.head_sha == head_sha,
            )
        )
        return result.first()

    async def local_label_ids(self, repository_id: int, github_ids: set[int]) -> dict[int, int]:
        """Maps remote label ids to local ids; labels not yet mirrored are absent"""
        if not github_ids:
            return {}
        result = await self._session.exec(
            select(Label.github_id, Label.id).where(
                Label.repository_id == repository_id,
                Label.github_id.in_(github_ids),
            )
        )
        return {github_id: local_id for github_id, local_id in result.all()}

    # Repository level

    async def upsert_installation(self, payload: GitHubInstallation) -> tuple[Installation, bool]:
        return await self._upsert(
            Installation,
            {"github_id": payload.id},
            {
                "account_id": payload.account.id,
                "account_login": payload.account.login,
                "account_type": payload.account.type,
                "avatar_url": payload.account.avatar_url,
                "suspended": payload.suspended_at is not None,
                "updated_at": utcnow(),
            },
        )

    async def upsert_repository(
        self,
        payload: GitHubRepository,
        installation_id: int | None = None,
    ) -> tuple[Repository, bool]:
        values = {
            "name": payload.name,
            "full_name": payload.full_name,
            "private": payload.private,
            "description": payload.description,
            "html_url": payload.html_url,
            "default_branch": payload.default_branch,
            "archived": payload.archived,
            "disabled": payload.disabled,
            "updated_at": utcnow(),
        }
        if installation_id is not None:
            values["installation_id"] = installation_id

        # A renamed repository keeps its github_id; a recreated one keeps its full_name
        existing = await self.get_repository_by_github_id(payload.id)
        if existing is None:
            by_name = await self.get_repository_by_full_name(payload.full_name)
            if by_name is not None:
                by_name.github_id = payload.id
                await self._session.flush()

        return await self._upsert(Repository, {"github_id": payload.id}, values)

    async def upsert_label(self, repository_id: int, payload: GitHubLabel) -> tuple[Label, bool]:
        return await self._upsert(
            Label,
            {"github_id": payload.id},
            {
                "repository_id": repository_id,
                "name": payload.name,
                "color": payload.color,
                "description": payload.description,
                "is_default": payload.default,
            },
        )

    async def upsert_milestone(self, repository_id: int, payload: GitHubMilestone) -> tuple[Milestone, bool]:
        return await self._upsert(
            Milestone,
            {"github_id": payload.id},
            {
                "repository_id": repository_id,
                "number": payload.number,
                "title": payload.title,
                "description": payload.description,
                "state": payload.state,
                "html_url": payload.html_url,
                "open_issues": payload.open_issues,
                "closed_issues": payload.closed_issues,
                "due_on": payload.due_on,
                "closed_at": payload.closed_at,
            },
        )

    async def upsert_issue_type(self, repository_id: int, payload: GitHubIssueType) -> tuple[IssueType, bool]:
        return await self._upsert(
            IssueType,
            {"repository_id": repository_id, "github_id": payload.id},
            {
                "name": payload.name,
                "color": payload.color,
                "description": payload.description,
            },
        )

    async def upsert_collaborator(
        self,
        repository_id: int,
        user_id: int,
        permission: str,
    ) -> tuple[RepositoryCollaborator, bool]:
        return await self._upsert(
            RepositoryCollaborator,
            {"repository_id": repository_id, "user_id": user_id},
            {"permission": permission},
        )

    async def delete_collaborator(self, repository_id: int, user_id: int) -> bool:
        collaborator = await self._find(RepositoryCollaborator, repository_id=repository_id, user_id=user_id)
        if collaborator is None:
            return False
        await self._session.delete(collaborator)
        return True

    async def link_installation(self, repository_github_ids: list[int], installation_id: int | None) -> int:
        if not repository_github_ids:
            return 0
        result = await self._session.exec(
            update(Repository)
            .where(Repository.github_id.in_(repository_github_ids))
            .values(installation_id=installation_id, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    async def delete_installation(self, github_id: int) -> bool:
        installation = await self.get_installation_by_github_id(github_id)
        if installation is None:
            return False
        await self._session.exec(
            update(Repository)
            .where(Repository.installation_id == installation.id)
            .values(installation_id=None)
            .execution_options(synchronize_session="fetch")
        )
        await self._session.delete(installation)
        return True

    # Issue level

    async def upsert_issue(
        self,
        repository_id: int,
        payload: GitHubIssue,
        *,
        user_id: int | None,
        milestone_id: int | None,
        type_id: int | None,
        closed_by_id: int | None,
        merged_by_id: int | None,
        synced_on_insert: bool,
    ) -> tuple[Issue, bool, IssueSnapshot | None]:
        """Keyed by (repository_id, number); returns the pre-update snapshot for existing rows"""
        existing = await self.get_issue_by_number(repository_id, payload.number)
        previous = (
            IssueSnapshot(state=existing.state, merged=existing.merged, draft=existing.draft)
            if existing is not None
            else None
        )

        values: dict[str, Any] = {
            "github_id": payload.id,
            "pull_request": payload.is_pull_request,
            "title": payload.title,
            "body": payload.body,
            "state": payload.state,
            "state_reason": payload.state_reason,
            "html_url": payload.html_url,
            "locked": payload.locked,
            "draft": payload.draft,
            "user_id": user_id,
            "milestone_id": milestone_id,
            "type_id": type_id,
            "closed_by_id": closed_by_id,
            "closed_at": payload.closed_at,
            "reaction_count": payload.reactions.total_count if payload.reactions else 0,
            "github_created_at": payload.created_at,
            "github_updated_at": payload.updated_at,
            "updated_at": utcnow(),
        }
        # The pulls endpoints omit the comment count; keep the mirrored one
        if "comments" in payload.model_fields_set:
            values["comment_count"] = payload.comments

        if isinstance(payload, GitHubPullRequest):
            values.update(
                {
                    "merged": payload.is_merged,
                    "merged_at": payload.merged_at,
                    "merged_by_id": merged_by_id,
                    "head_ref": payload.head.ref if payload.head else None,
                    "head_sha": payload.head.sha if payload.head else None,
                    "base_ref": payload.base.ref if payload.base else None,
                    "base_sha": payload.base.sha if payload.base else None,
                }
            )

        insert_only: dict[str, Any] = {}
        if synced_on_insert:
            insert_only = {"synced": True, "synced_at": utcnow()}

        issue, created = await self._upsert(
            Issue,
            {"repository_id": repository_id, "number": payload.number},
            values,
            insert_only=insert_only,
        )
        return issue, created, previous

    async def upsert_comment(
        self,
        issue_id: int,
        payload: GitHubComment,
        user_id: int | None,
    ) -> tuple[IssueComment, bool]:
        return await self._upsert(
            IssueComment,
            {"github_id": payload.id},
            {
                "issue_id": issue_id,
                "user_id": user_id,
                "body": payload.body or "",
                "html_url": payload.html_url,
                "github_created_at": payload.created_at,
                "github_updated_at": payload.updated_at,
            },
        )

    async def upsert_review(
        self,
        issue_id: int,
        payload: GitHubReview,
        user_id: int | None,
    ) -> tuple[IssueReview, bool]:
        return await self._upsert(
            IssueReview,
            {"github_id": payload.id},
            {
                "issue_id": issue_id,
                "user_id": user_id,
                "body": payload.body,
                "state": payload.state.upper(),
                "commit_id": payload.commit_id,
                "html_url": payload.html_url,
                "submitted_at": payload.submitted_at,
            },
        )

    async def upsert_review_comment(
        self,
        issue_id: int,
        payload: GitHubReviewComment,
        user_id: int | None,
    ) -> tuple[IssueReviewComment, bool]:
        review_id = None
        if payload.pull_request_review_id is not None:
            review = await self._find(IssueReview, github_id=payload.pull_request_review_id)
            review_id = review.id if review else None

        return await self._upsert(
            IssueReviewComment,
            {"github_id": payload.id},
            {
                "issue_id": issue_id,
                "review_id": review_id,
                "user_id": user_id,
                "body": payload.body or "",
                "path": payload.path,
                "line": payload.line,
                "side": payload.side,
                "commit_id": payload.commit_id,
                "diff_hunk": payload.diff_hunk,
                "html_url": payload.html_url,
                "github_created_at": payload.created_at,
                "github_updated_at": payload.updated_at,
            },
        )

    async def upsert_release(
        self,
        repository_id: int,
        payload: GitHubRelease,
        author_id: int | None,
    ) -> tuple[Release, bool]:
        return await self._upsert(
            Release,
            {"github_id": payload.id},
            {
                "repository_id": repository_id,
                "author_id": author_id,
                "tag_name": payload.tag_name,
                "name": payload.name,
                "body": payload.body,
                "draft": payload.draft,
                "prerelease": payload.prerelease,
                "html_url": payload.html_url,
                "published_at": payload.published_at,
            },
        )

    async def upsert_workflow_run(
        self,
        repository_id: int,
        payload: GitHubWorkflowRun,
        *,
        issue_id: int | None,
        actor_id: int | None,
        workflow_name: str | None = None,
    ) -> tuple[WorkflowRun, bool]:
        return await self._upsert(
            WorkflowRun,
            {"github_id": payload.id},
            {
                "repository_id": repository_id,
                "issue_id": issue_id,
                "actor_id": actor_id,
                "kind": "workflow",
                "name": payload.name or workflow_name or "workflow",
                "workflow_name": workflow_name,
                "head_branch": payload.head_branch,
                "head_sha": payload.head_sha,
                "event": payload.event,
                "status": payload.status,
                "conclusion": payload.conclusion,
                "html_url": payload.html_url,
                "run_number": payload.run_number,
                "run_attempt": payload.run_attempt,
                "started_at": payload.run_started_at,
                "completed_at": payload.updated_at if payload.status == "completed" else None,
                "github_created_at": payload.created_at,
            },
        )

    async def upsert_check_run(
        self,
        repository_id: int,
        payload: GitHubCheckRun,
        *,
        issue_id: int | None,
    ) -> tuple[WorkflowRun, bool]:
        return await self._upsert(
            WorkflowRun,
            {"github_id": payload.id},
            {
                "repository_id": repository_id,
                "issue_id": issue_id,
                "kind": "check",
                "name": payload.name,
                "head_sha": payload.head_sha,
                "status": payload.status,
                "conclusion": payload.conclusion,
                "html_url": payload.html_url,
                "started_at": payload.started_at,
                "completed_at": payload.completed_at,
                "github_created_at": payload.started_at,
            },
        )

    # Deletes

    async def delete_issue(self, repository_id: int, number: int) -> bool:
        issue = await self.get_issue_by_number(repository_id, number)
        if issue is None:
            return False
        await self._delete_issue_rows([issue.id])
        return True

    async def _delete_issue_rows(self, issue_ids: list[int]) -> None:
        """Explicit cascade so SQLite without FK enforcement stays consistent"""
        if not issue_ids:
            return
        for model in (
            IssueAssignee,
            IssueLabel,
            IssueRequestedReviewer,
            IssueSubscription,
            IssueReviewComment,
            IssueReview,
            IssueComment,
            Notification,
        ):
            await self._session.exec(delete(model).where(model.issue_id.in_(issue_ids)))
        await self._session.exec(
            update(WorkflowRun).where(WorkflowRun.issue_id.in_(issue_ids)).values(issue_id=None)
        )
        await self._session.exec(delete(Issue).where(Issue.id.in_(issue_ids)))

    async def delete_repository(self, repository_id: int) -> None:
        issue_ids = list((await self._session.exec(select(Issue.id).where(Issue.repository_id == repository_id))).all())
        await self._delete_issue_rows(issue_ids)
        for model in (
            Notification,
            WorkflowRun,
            Release,
            IssueType,
            Label,
            Milestone,
            RepositoryCollaborator,
            RepositorySubscription,
            SyncRun,
        ):
            await self._session.exec(delete(model).where(model.repository_id == repository_id))
        await self._session.exec(delete(Repository).where(Repository.id == repository_id))

    async def delete_label(self, github_id: int) -> bool:
        label = await self._find(Label, github_id=github_id)
        if label is None:
            return False
        await self._session.exec(delete(IssueLabel).where(IssueLabel.label_id == label.id))
        await self._session.delete(label)
        return True

    async def delete_milestone(self, github_id: int) -> bool:
        milestone = await self._find(Milestone, github_id=github_id)
        if milestone is None:
            return False
        await self._session.exec(
            update(Issue).where(Issue.milestone_id == milestone.id).values(milestone_id=None)
        )
        await self._session.delete(milestone)
        return True

    async def delete_comment(self, github_id: int) -> IssueComment | None:
        comment = await self._find(IssueComment, github_id=github_id)
        if comment is not None:
            await self._session.delete(comment)
        return comment

    async def delete_review_comment(self, github_id: int) -> bool:
        comment = await self._find(IssueReviewComment, github_id=github_id)
        if comment is None:
            return False
        await self._session.delete(comment)
        return True

    async def delete_release(self, github_id: int) -> bool:
        release = await self._find(Release, github_id=github_id)
        if release is None:
            return False
        await self._session.exec(delete(Notification).where(Notification.release_id == release.id))
        await self._session.delete(release)
        return True
