"""
Webhook event handlers.

Every handler is an idempotent upsert or delete through the reconciler and
returns ChangeEvents only for changes that are new in the mirror, so a
redelivered payload writes the same rows and notifies nobody.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from mir_database.models import Issue
from mir_shared.constants import CI_FAILING_CONCLUSIONS, MAINTAINER_PERMISSIONS
from sqlalchemy import update
from sqlmodel.ext.asyncio.session import AsyncSession

from mir_backend.services.notification_service import ChangeEvent
from mir_backend.services.staleness import invalidate_resolution
from mir_backend.services.subscription_service import ensure_default_subscription

from .payloads import (
    GitHubCheckRun,
    GitHubComment,
    GitHubInstallation,
    GitHubIssue,
    GitHubLabel,
    GitHubMilestone,
    GitHubPullRequest,
    GitHubRelease,
    GitHubRepository,
    GitHubReview,
    GitHubReviewComment,
    GitHubUser,
    GitHubWorkflowRun,
)
from .persistence import MirrorPersistence
from .reconciler import EntityReconciler, IssueChange

logger = logging.getLogger(__name__)


class WebhookEvent(str, Enum):
    PING = "ping"
    INSTALLATION = "installation"
    INSTALLATION_REPOSITORIES = "installation_repositories"
    REPOSITORY = "repository"
    MEMBER = "member"
    LABEL = "label"
    MILESTONE = "milestone"
    ISSUES = "issues"
    ISSUE_COMMENT = "issue_comment"
    PULL_REQUEST = "pull_request"
    PULL_REQUEST_REVIEW = "pull_request_review"
    PULL_REQUEST_REVIEW_COMMENT = "pull_request_review_comment"
    RELEASE = "release"
    WORKFLOW_RUN = "workflow_run"
    CHECK_RUN = "check_run"


@dataclass
class HandlerContext:
    session: AsyncSession
    reconciler: EntityReconciler
    event: WebhookEvent
    action: str | None
    delivery_id: str

    @property
    def persistence(self) -> MirrorPersistence:
        return self.reconciler.persistence


HandlerFn = Callable[[HandlerContext, dict[str, Any]], Awaitable[list[ChangeEvent]]]


@dataclass(frozen=True)
class WebhookHandler:
    handle: HandlerFn
    # None handles every action of the event
    actions: frozenset[str] | None = None

    def accepts(self, action: str | None) -> bool:
        return self.actions is None or action in self.actions


# Helpers

async def _actor_id(ctx: HandlerContext, payload: dict[str, Any]) -> int | None:
    sender = payload.get("sender")
    if not sender:
        return None
    return await ctx.reconciler.ensure_user(GitHubUser.model_validate(sender))


async def _mirrored_repository_id(ctx: HandlerContext, payload: dict[str, Any]) -> int | None:
    """Events for repositories that were never synced are ignored"""
    remote = payload.get("repository")
    if not remote:
        return None
    repository = await ctx.persistence.get_repository_by_github_id(remote["id"])
    if repository is None:
        logger.info(
            f"Ignoring {ctx.event.value}.{ctx.action} for unmirrored repository {remote.get('full_name')}",
            extra={"delivery_id": ctx.delivery_id},
        )
        return None
    return repository.id


def _participants(change: IssueChange) -> frozenset:
    return frozenset({change.author_id, *change.assignee_ids} - {None})


def _kind(change: IssueChange) -> tuple[str, str]:
    """(subscription channel, notification type)"""
    if change.pull_request:
        return "pull_requests", "pull_request"
    return "issues", "issue"


def _issue_events(
    action: str | None,
    change: IssueChange,
    repository_id: int,
    remote: GitHubIssue,
    actor_id: int | None,
) -> list[ChangeEvent]:
    """Translates an applied issue or pull request into the changes worth notifying"""
    category, kind = _kind(change)
    key = f"{kind}:{remote.id}"
    stamp = remote.updated_at.isoformat() if remote.updated_at else ""

    def event(event_action: str, dedup_key: str, **extra: Any) -> ChangeEvent:
        return ChangeEvent(
            category=category,
            type=kind,
            action=event_action,
            repository_id=repository_id,
            issue_id=change.issue_id,
            actor_id=actor_id,
            body=remote.title,
            dedup_key=dedup_key,
            **extra,
        )

    if action == "opened" and change.created:
        return [event("opened", f"{key}:opened", mention_text=remote.body)]

    if action == "closed" and change.state_changed:
        closed_action = "merged" if change.became_merged else "closed"
        return [event(closed_action, f"{key}:{closed_action}:{stamp}", participant_ids=_participants(change))]

    if action == "reopened" and change.state_changed:
        return [event("reopened", f"{key}:reopened:{stamp}", participant_ids=_participants(change))]

    if action == "assigned" and change.added_assignee_ids:
        return [
            event(
                "assigned",
                f"{key}:assigned:{stamp}",
                direct_recipient_ids=change.added_assignee_ids,
                broadcast=False,
            )
        ]

    if action == "review_requested" and change.added_reviewer_ids:
        return [
            event(
                "review_requested",
                f"{key}:review_requested:{stamp}",
                direct_recipient_ids=change.added_reviewer_ids,
                broadcast=False,
            )
        ]

    if action == "ready_for_review" and change.became_ready:
        return [event("ready_for_review", f"{key}:ready_for_review:{stamp}")]

    return []


async def _apply_labeled(ctx: HandlerContext, repository_id: int, payload: dict[str, Any]) -> None:
    """The label named by a labeled event may be newer than the last sync"""
    if ctx.action == "labeled" and payload.get("label"):
        await ctx.persistence.upsert_label(repository_id, GitHubLabel.model_validate(payload["label"]))


async def _ensure_issue(
    ctx: HandlerContext,
    repository_id: int,
    payload: dict[str, Any],
) -> tuple[int, bool, int | None, bool]:
    """Local (issue_id, pull_request, author_id, applied) for the issue an event hangs off; applied when it was new"""
    if "pull_request" in payload and isinstance(payload["pull_request"], dict) and "head" in payload["pull_request"]:
        remote: GitHubIssue = GitHubPullRequest.model_validate(payload["pull_request"])
    else:
        remote = GitHubIssue.model_validate(payload["issue"])

    issue = await ctx.persistence.get_issue_by_number(repository_id, remote.number)
    if issue is not None:
        return issue.id, issue.pull_request, issue.user_id, False

    change = await ctx.reconciler.apply_issue(repository_id, remote, mark_new_trivial_synced=True)
    return change.issue_id, change.pull_request, change.author_id, True


# Handlers

async def handle_ping(ctx: HandlerContext, payload: dict[str, Any]) -> list[ChangeEvent]:
    logger.info(f"Webhook ping: {payload.get('zen', '')}", extra={"hook_id": payload.get("hook_id")})
    return []


async def handle_installation(ctx: HandlerContext, payload: dict[str, Any]) -> list[ChangeEvent]:
    remote = GitHubInstallation.model_validate(payload["installation"])

    if ctx.action == "deleted":
        await ctx.persistence.delete_installation(remote.id)
        await ctx.session.commit()
        logger.info(f"Installation {remote.id} removed for {remote.account.login}")
        return []

    installation, created = await ctx.persistence.upsert_installation(remote)
    repository_ids = [repo["id"] for repo in payload.get("repositories") or []]
    linked = await ctx.persistence.link_installation(repository_ids, installation.id)
    await ctx.session.commit()

    logger.info(
        f"Installation {remote.id} {ctx.action} for {remote.account.login}; {linked} mirrored repositories linked",
        extra={"installation_id": remote.id, "created": created},
    )
    return []


async def handle_installation_repositories(ctx: HandlerContext, payload: dict[str, Any]) -> list[ChangeEvent]:
    remote = GitHubInstallation.model_validate(payload["installation"])
    installation, _ = await ctx.persistence.upsert_installation(remote)

    added = [repo["id"] for repo in payload.get("repositories_added") or []]
    await ctx.persistence.link_installation(added, installation.id)

    for repo in payload.get("repositories_removed") or []:
        repository = await ctx.persistence.get_repository_by_github_id(repo["id"])
        if repository is not None:
            await ctx.persistence.delete_repository(repository.id)
            logger.info(f"Removed {repo.get('full_name')} from mirror; uninstalled")

    await ctx.session.commit()
    return []


async def handle_repository(ctx: HandlerContext, payload: dict[str, Any]) -> list[ChangeEvent]:
    repository_id = await _mirrored_repository_id(ctx, payload)
    if repository_id is None:
        return []

    if ctx.action == "deleted":
        await ctx.persistence.delete_repository(repository_id)
        await ctx.session.commit()
        logger.info(f"Removed {payload['repository'].get('full_name')} from mirror; deleted upstream")
        return []

    await ctx.persistence.upsert_repository(GitHubRepository.model_validate(payload["repository"]))
    await ctx.session.commit()
    return []


async def handle_member(ctx: HandlerContext, payload: dict[str, Any]) -> list[ChangeEvent]:
    repository_id = await _mirrored_repository_id(ctx, payload)
    if repository_id is None:
        return []

    user_id = await ctx.reconciler.ensure_user(GitHubUser.model_validate(payload["member"]))
    permission = ((payload.get("changes") or {}).get("permission") or {}).get("to") or "push"

    if ctx.action == "removed" or permission not in MAINTAINER_PERMISSIONS:
        await ctx.persistence.delete_collaborator(repository_id, user_id)
    else:
        await ctx.persistence.upsert_collaborator(repository_id, user_id, permission)
        await ensure_default_subscription(ctx.session, user_id, repository_id, commit=False)

    await ctx.session.commit()
    return []


async def handle_label(ctx: HandlerContext, payload: dict[str, Any]) -> list[ChangeEvent]:
    repository_id = await _mirrored_repository_id(ctx, payload)
    if repository_id is None:
        return []

    remote = GitHubLabel.model_validate(payload["label"])
    if ctx.action == "deleted":
        await ctx.persistence.delete_label(remote.id)
    else:
        await ctx.persistence.upsert_label(repository_id, remote)
    await ctx.session.commit()
    return []


async def handle_milestone(ctx: HandlerContext, payload: dict[str, Any]) -> list[ChangeEvent]:
    repository_id = await _mirrored_repository_id(ctx, payload)
    if repository_id is None:
        return []

    remote = GitHubMilestone.model_validate(payload["milestone"])
    if ctx.action == "deleted":
        await ctx.persistence.delete_milestone(remote.id)
    else:
        await ctx.persistence.upsert_milestone(repository_id, remote)
    await ctx.session.commit()
    return []


async def handle_issues(ctx: HandlerContext, payload: dict[str, Any]) -> list[ChangeEvent]:
    repository_id = await _mirrored_repository_id(ctx, payload)
    if repository_id is None:
        return []

    remote = GitHubIssue.model_validate(payload["issue"])

    if ctx.action in ("deleted", "transferred"):
        if await ctx.persistence.delete_issue(repository_id, remote.number):
            logger.info(f"Removed issue #{remote.number} from mirror; {ctx.action} upstream")
        await ctx.session.commit()
        return []

    actor_id = await _actor_id(ctx, payload)
    await _apply_labeled(ctx, repository_id, payload)
    change = await ctx.reconciler.apply_issue(repository_id, remote, mark_new_trivial_synced=True)
    return _issue_events(ctx.action, change, repository_id, remote, actor_id)


async def handle_pull_request(ctx: HandlerContext, payload: dict[str, Any]) -> list[ChangeEvent]:
    repository_id = await _mirrored_repository_id(ctx, payload)
    if repository_id is None:
        return []

    remote = GitHubPullRequest.model_validate(payload["pull_request"])
    actor_id = await _actor_id(ctx, payload)
    await _apply_labeled(ctx, repository_id, payload)
    change = await ctx.reconciler.apply_issue(repository_id, remote, mark_new_trivial_synced=True)
    return _issue_events(ctx.action, change, repository_id, remote, actor_id)


async def handle_issue_comment(ctx: HandlerContext, payload: dict[str, Any]) -> list[ChangeEvent]:
    repository_id = await _mirrored_repository_id(ctx, payload)
    if repository_id is None:
        return []

    remote = GitHubComment.model_validate(payload["comment"])

    if ctx.action == "deleted":
        comment = await ctx.persistence.delete_comment(remote.id)
        if comment is not None:
            await ctx.session.exec(
                update(Issue)
                .where(Issue.id == comment.issue_id, Issue.comment_count > 0)
                .values(comment_count=Issue.comment_count - 1)
                .execution_options(synchronize_session="fetch")
            )
        await ctx.session.commit()
        return []

    issue_id, pull_request, _, applied = await _ensure_issue(ctx, repository_id, payload)
    commenter_id = await ctx.reconciler.ensure_user(remote.user)
    _, created = await ctx.persistence.upsert_comment(issue_id, remote, commenter_id)

    if created:
        issue = await ctx.session.get(Issue, issue_id)
        # A freshly applied issue already counts this comment
        if not applied:
            issue.comment_count += 1
        invalidate_resolution(issue)
        await ctx.reconciler.subscribe_to_issue(issue_id, commenter_id)
    await ctx.session.commit()

    if not created or ctx.action != "created":
        return []

    category, kind = ("pull_requests", "pull_request") if pull_request else ("issues", "issue")
    return [
        ChangeEvent(
            category=category,
            type=kind,
            action="comment",
            repository_id=repository_id,
            issue_id=issue_id,
            actor_id=commenter_id,
            body=remote.body,
            mention_text=remote.body,
            dedup_key=f"comment:{remote.id}",
        )
    ]


async def handle_pull_request_review(ctx: HandlerContext, payload: dict[str, Any]) -> list[ChangeEvent]:
    repository_id = await _mirrored_repository_id(ctx, payload)
    if repository_id is None:
        return []

    remote = GitHubReview.model_validate(payload["review"])
    issue_id, _, author_id, _ = await _ensure_issue(ctx, repository_id, payload)

    existing = await ctx.persistence.get_review_by_github_id(remote.id)
    previous_state = existing.state if existing is not None else None

    reviewer_id = await ctx.reconciler.ensure_user(remote.user)
    review, created = await ctx.persistence.upsert_review(issue_id, remote, reviewer_id)
    await ctx.reconciler.subscribe_to_issue(issue_id, reviewer_id)
    await ctx.session.commit()

    if ctx.action == "submitted" and created and review.state != "PENDING":
        return [
            ChangeEvent(
                category="pull_requests",
                type="pull_request",
                action="review_submitted",
                repository_id=repository_id,
                issue_id=issue_id,
                actor_id=reviewer_id,
                body=remote.body or review.state.lower().replace("_", " "),
                mention_text=remote.body,
                direct_recipient_ids=frozenset({author_id} - {None}),
                dedup_key=f"review:{remote.id}:submitted",
            )
        ]

    if ctx.action == "dismissed" and previous_state != "DISMISSED" and review.state == "DISMISSED":
        return [
            ChangeEvent(
                category="pull_requests",
                type="pull_request",
                action="review_dismissed",
                repository_id=repository_id,
                issue_id=issue_id,
                actor_id=await _actor_id(ctx, payload),
                direct_recipient_ids=frozenset({reviewer_id} - {None}),
                broadcast=False,
                dedup_key=f"review:{remote.id}:dismissed",
            )
        ]

    return []


async def handle_pull_request_review_comment(ctx: HandlerContext, payload: dict[str, Any]) -> list[ChangeEvent]:
    repository_id = await _mirrored_repository_id(ctx, payload)
    if repository_id is None:
        return []

    remote = GitHubReviewComment.model_validate(payload["comment"])

    if ctx.action == "deleted":
        await ctx.persistence.delete_review_comment(remote.id)
        await ctx.session.commit()
        return []

    issue_id, _, _, _ = await _ensure_issue(ctx, repository_id, payload)
    commenter_id = await ctx.reconciler.ensure_user(remote.user)
    _, created = await ctx.persistence.upsert_review_comment(issue_id, remote, commenter_id)
    await ctx.reconciler.subscribe_to_issue(issue_id, commenter_id)
    await ctx.session.commit()

    if not created or ctx.action != "created":
        return []

    return [
        ChangeEvent(
            category="pull_requests",
            type="pull_request",
            action="comment",
            repository_id=repository_id,
            issue_id=issue_id,
            actor_id=commenter_id,
            body=remote.body,
            mention_text=remote.body,
            dedup_key=f"review_comment:{remote.id}",
        )
    ]


async def handle_release(ctx: HandlerContext, payload: dict[str, Any]) -> list[ChangeEvent]:
    repository_id = await _mirrored_repository_id(ctx, payload)
    if repository_id is None:
        return []

    remote = GitHubRelease.model_validate(payload["release"])

    if ctx.action == "deleted":
        await ctx.persistence.delete_release(remote.id)
        await ctx.session.commit()
        return []

    existing = await ctx.persistence.get_release_by_github_id(remote.id)
    was_published = existing is not None and not existing.draft and existing.published_at is not None

    author_id = await ctx.reconciler.ensure_user(remote.author)
    release, _ = await ctx.persistence.upsert_release(repository_id, remote, author_id)
    await ctx.session.commit()

    if ctx.action == "published" and not remote.draft and not was_published:
        return [
            ChangeEvent(
                category="releases",
                type="release",
                action="published",
                repository_id=repository_id,
                release_id=release.id,
                actor_id=author_id,
                body=remote.name or remote.tag_name,
                mention_text=remote.body,
                dedup_key=f"release:{remote.id}:published",
            )
        ]
    return []


async def _linked_pull_request_id(
    ctx: HandlerContext,
    repository_id: int,
    numbers: list[int],
    head_sha: str,
) -> int | None:
    for number in numbers:
        issue = await ctx.persistence.get_issue_by_number(repository_id, number)
        if issue is not None:
            return issue.id
    return await ctx.persistence.pull_request_id_for_sha(repository_id, head_sha)


async def handle_workflow_run(ctx: HandlerContext, payload: dict[str, Any]) -> list[ChangeEvent]:
    repository_id = await _mirrored_repository_id(ctx, payload)
    if repository_id is None:
        return []

    remote = GitHubWorkflowRun.model_validate(payload["workflow_run"])
    existing = await ctx.persistence.get_workflow_run_by_github_id(remote.id)
    previous_conclusion = existing.conclusion if existing is not None else None

    issue_id = await _linked_pull_request_id(
        ctx,
        repository_id,
        [ref.number for ref in remote.pull_requests],
        remote.head_sha,
    )
    actor_id = await ctx.reconciler.ensure_user(remote.actor)
    workflow_name = (payload.get("workflow") or {}).get("name")
    run, _ = await ctx.persistence.upsert_workflow_run(
        repository_id,
        remote,
        issue_id=issue_id,
        actor_id=actor_id,
        workflow_name=workflow_name,
    )
    await ctx.session.commit()

    newly_failed = (
        ctx.action == "completed"
        and remote.conclusion in CI_FAILING_CONCLUSIONS
        and previous_conclusion is None
    )
    if not newly_failed:
        return []

    author_id = None
    if issue_id is not None:
        issue = await ctx.session.get(Issue, issue_id)
        author_id = issue.user_id if issue else None

    return [
        ChangeEvent(
            category="ci",
            type="workflow_run",
            action="failed",
            repository_id=repository_id,
            workflow_run_id=run.id,
            body=f"{run.name} {remote.conclusion} on {remote.head_branch or remote.head_sha[:7]}",
            direct_recipient_ids=frozenset({author_id, actor_id} - {None}),
            dedup_key=f"workflow_run:{remote.id}:{remote.run_attempt}:failed",
        )
    ]


async def handle_check_run(ctx: HandlerContext, payload: dict[str, Any]) -> list[ChangeEvent]:
    repository_id = await _mirrored_repository_id(ctx, payload)
    if repository_id is None:
        return []

    remote = GitHubCheckRun.model_validate(payload["check_run"])
    issue_id = await _linked_pull_request_id(
        ctx,
        repository_id,
        [ref.number for ref in remote.pull_requests],
        remote.head_sha,
    )
    await ctx.persistence.upsert_check_run(repository_id, remote, issue_id=issue_id)
    await ctx.session.commit()
    return []


ISSUE_ACTIONS = frozenset(
    {
        "opened", "edited", "closed", "reopened", "assigned", "unassigned",
        "labeled", "unlabeled", "milestoned", "demilestoned", "locked", "unlocked",
        "pinned", "unpinned", "typed", "untyped", "deleted", "transferred",
    }
)

PULL_REQUEST_ACTIONS = frozenset(
    {
        "opened", "edited", "closed", "reopened", "assigned", "unassigned",
        "labeled", "unlabeled", "milestoned", "demilestoned", "locked", "unlocked",
        "review_requested", "review_request_removed", "ready_for_review",
        "converted_to_draft", "synchronize",
    }
)

HANDLERS: dict[WebhookEvent, WebhookHandler] = {
    WebhookEvent.PING: WebhookHandler(handle_ping),
    WebhookEvent.INSTALLATION: WebhookHandler(
        handle_installation,
        frozenset({"created", "deleted", "suspend", "unsuspend", "new_permissions_accepted"}),
    ),
    WebhookEvent.INSTALLATION_REPOSITORIES: WebhookHandler(
        handle_installation_repositories,
        frozenset({"added", "removed"}),
    ),
    WebhookEvent.REPOSITORY: WebhookHandler(
        handle_repository,
        frozenset({"edited", "renamed", "archived", "unarchived", "publicized", "privatized", "transferred", "deleted"}),
    ),
    WebhookEvent.MEMBER: WebhookHandler(handle_member, frozenset({"added", "edited", "removed"})),
    WebhookEvent.LABEL: WebhookHandler(handle_label, frozenset({"created", "edited", "deleted"})),
    WebhookEvent.MILESTONE: WebhookHandler(
        handle_milestone,
        frozenset({"created", "edited", "opened", "closed", "deleted"}),
    ),
    WebhookEvent.ISSUES: WebhookHandler(handle_issues, ISSUE_ACTIONS),
    WebhookEvent.ISSUE_COMMENT: WebhookHandler(handle_issue_comment, frozenset({"created", "edited", "deleted"})),
    WebhookEvent.PULL_REQUEST: WebhookHandler(handle_pull_request, PULL_REQUEST_ACTIONS),
    WebhookEvent.PULL_REQUEST_REVIEW: WebhookHandler(
        handle_pull_request_review,
        frozenset({"submitted", "edited", "dismissed"}),
    ),
    WebhookEvent.PULL_REQUEST_REVIEW_COMMENT: WebhookHandler(
        handle_pull_request_review_comment,
        frozenset({"created", "edited", "deleted"}),
    ),
    WebhookEvent.RELEASE: WebhookHandler(
        handle_release,
        frozenset({"published", "created", "edited", "prereleased", "released", "unpublished", "deleted"}),
    ),
    WebhookEvent.WORKFLOW_RUN: WebhookHandler(handle_workflow_run, frozenset({"requested", "in_progress", "completed"})),
    WebhookEvent.CHECK_RUN: WebhookHandler(handle_check_run, frozenset({"created", "completed", "rerequested"})),
}
