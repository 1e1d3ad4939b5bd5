"""
Read-through issue access.
Applies the staleness policy: never-synced issues are fetched before the
response, stale ones are served as cached while a refresh runs in the background.
"""
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from mir_database.models import Issue, IssueAssignee, IssueLabel, Label, User
from mir_database.session import async_session_factory
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from mir_backend.core.clock import as_utc
from mir_backend.core.errors import IssueNotFoundError, RepositoryNotFoundError
from mir_backend.ingestion.client_factory import open_github_client
from mir_backend.ingestion.github_client import GitHubRestClient
from mir_backend.ingestion.persistence import MirrorPersistence
from mir_backend.services.issue_sync_service import sync_issue
from mir_backend.services.staleness import FreshnessDecision, resolve_issue, resolve_resolution

logger = logging.getLogger(__name__)

# (repository_id, full_name, number)
RefreshScheduler = Callable[[int, str, int], None]


@dataclass
class IssueView:
    """Issue detail as served to callers"""
    number: int
    title: str
    body: str | None
    state: str
    state_reason: str | None
    pull_request: bool
    draft: bool
    merged: bool
    locked: bool
    html_url: str | None
    comment_count: int
    author: str | None
    labels: list[str] = field(default_factory=list)
    assignees: list[str] = field(default_factory=list)
    github_created_at: datetime | None = None
    github_updated_at: datetime | None = None
    synced_at: datetime | None = None
    stale: bool = False


@dataclass
class ResolutionView:
    status: str | None
    confidence: float | None
    analyzed_at: datetime | None
    skipped: bool
    stale: bool


async def _resolve_repository_id(db: AsyncSession, full_name: str) -> int:
    repository = await MirrorPersistence(db).get_repository_by_full_name(full_name)
    if repository is None:
        raise RepositoryNotFoundError(full_name)
    return repository.id


async def _build_view(db: AsyncSession, issue: Issue, stale: bool) -> IssueView:
    labels = await db.exec(
        select(Label.name)
        .join(IssueLabel, IssueLabel.label_id == Label.id)
        .where(IssueLabel.issue_id == issue.id)
        .order_by(Label.name)
    )
    assignees = await db.exec(
        select(User.login)
        .join(IssueAssignee, IssueAssignee.user_id == User.id)
        .where(IssueAssignee.issue_id == issue.id)
        .order_by(User.login)
    )
    author = None
    if issue.user_id is not None:
        author = (await db.exec(select(User.login).where(User.id == issue.user_id))).first()

    return IssueView(
        number=issue.number,
        title=issue.title,
        body=issue.body,
        state=issue.state,
        state_reason=issue.state_reason,
        pull_request=issue.pull_request,
        draft=issue.draft,
        merged=issue.merged,
        locked=issue.locked,
        html_url=issue.html_url,
        comment_count=issue.comment_count,
        author=author,
        labels=list(labels.all()),
        assignees=list(assignees.all()),
        github_created_at=as_utc(issue.github_created_at),
        github_updated_at=as_utc(issue.github_updated_at),
        synced_at=as_utc(issue.synced_at),
        stale=stale,
    )


async def get_issue(
    db: AsyncSession,
    client: GitHubRestClient,
    full_name: str,
    number: int,
    schedule_refresh: RefreshScheduler | None = None,
    now: datetime | None = None,
) -> IssueView:
    """
    Returns the mirrored issue, fetching it first when it was never fully
    synced. A stale issue is returned as cached with stale=True and a
    refresh handed to schedule_refresh.
    """
    repository_id = await _resolve_repository_id(db, full_name)
    persistence = MirrorPersistence(db)
    issue = await persistence.get_issue_by_number(repository_id, number)

    if issue is None:
        decision = FreshnessDecision.AWAIT_FRESH_THEN_SERVE
    else:
        decision = resolve_issue(issue, now)

    if decision == FreshnessDecision.AWAIT_FRESH_THEN_SERVE:
        logger.info(f"Fetching {full_name}#{number} before serving; never synced")
        await sync_issue(db, client, repository_id, full_name, number)
        issue = await persistence.get_issue_by_number(repository_id, number)
        if issue is None:
            raise IssueNotFoundError(f"{full_name}#{number}")
        return await _build_view(db, issue, stale=False)

    stale = decision == FreshnessDecision.SERVE_CACHED_AND_REFRESH_ASYNC
    if stale and schedule_refresh is not None:
        schedule_refresh(repository_id, full_name, number)
        logger.debug(f"Scheduled background refresh of {full_name}#{number}")

    return await _build_view(db, issue, stale=stale)


async def resync_issue(
    db: AsyncSession,
    client: GitHubRestClient,
    full_name: str,
    number: int,
) -> IssueView:
    """On-demand refresh of an already mirrored issue, served fresh"""
    repository_id = await _resolve_repository_id(db, full_name)
    persistence = MirrorPersistence(db)
    if await persistence.get_issue_by_number(repository_id, number) is None:
        raise IssueNotFoundError(f"{full_name}#{number}")

    await sync_issue(db, client, repository_id, full_name, number)
    issue = await persistence.get_issue_by_number(repository_id, number)
    if issue is None:
        raise IssueNotFoundError(f"{full_name}#{number}")
    return await _build_view(db, issue, stale=False)


async def get_resolution(
    db: AsyncSession,
    full_name: str,
    number: int,
    now: datetime | None = None,
) -> ResolutionView:
    """Cached resolution fields; closed issues and pull requests report skipped"""
    repository_id = await _resolve_repository_id(db, full_name)
    issue = await MirrorPersistence(db).get_issue_by_number(repository_id, number)
    if issue is None:
        raise IssueNotFoundError(f"{full_name}#{number}")

    decision = resolve_resolution(issue, now)
    return ResolutionView(
        status=None if decision.skipped else issue.resolution_status,
        confidence=None if decision.skipped else issue.resolution_confidence,
        analyzed_at=None if decision.skipped else as_utc(issue.resolution_analyzed_at),
        skipped=decision.skipped,
        stale=decision.stale,
    )


async def refresh_issue_in_background(
    repository_id: int,
    full_name: str,
    number: int,
    token: str,
) -> None:
    """Runs after the response; failures are logged and never reach the caller"""
    try:
        async with async_session_factory() as session, open_github_client(token) as client:
            await sync_issue(session, client, repository_id, full_name, number)
    except Exception as e:
        logger.warning(
            f"Background refresh of {full_name}#{number} failed: {e}",
            extra={"repository": full_name, "number": number},
        )
