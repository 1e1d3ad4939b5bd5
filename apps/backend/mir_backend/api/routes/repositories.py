"""API routes for mirrored repositories: sync, subscription, issues and CI."""
from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Path, Response
from pydantic import BaseModel
from sqlmodel.ext.asyncio.session import AsyncSession

from mir_backend.api.dependencies import get_db, get_github_client
from mir_backend.core.audit import AuditEvent, log_audit_event
from mir_backend.core.errors import IssueNotFoundError, RepositoryNotFoundError, SubscriptionNotFoundError
from mir_backend.ingestion.github_client import GitHubRestClient
from mir_backend.ingestion.persistence import MirrorPersistence
from mir_backend.middleware.auth import AuthContext, require_identity
from mir_backend.services.ci_service import get_issue_ci_status
from mir_backend.services.issue_service import get_issue, get_resolution, refresh_issue_in_background, resync_issue
from mir_backend.services.repository_access import get_repository_for_user
from mir_backend.services.repository_service import remove_repository
from mir_backend.services.subscription_service import (
    SubscriptionChannels,
    SubscriptionView,
    apply_preset,
    delete_subscription,
    get_subscription,
    to_view,
    update_subscription,
)
from mir_backend.services.sync_service import (
    SyncStatus,
    get_sync_status,
    run_sync_in_background,
    start_repository_sync,
)

router = APIRouter()

Owner = Annotated[str, Path(min_length=1, max_length=39)]
Name = Annotated[str, Path(min_length=1, max_length=100)]


# Request/Response Models

class RepositoryRemovedResponse(BaseModel):
    success: bool
    repository: str


class SyncTriggerResponse(BaseModel):
    started: bool
    already_syncing: bool
    previous_synced_at: datetime | None
    run_id: UUID | None


class SubscriptionUpdateRequest(SubscriptionChannels):
    """Any subset of channels, or a named preset applied before the channels"""
    preset: str | None = None


class IssueResponse(BaseModel):
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
    labels: list[str]
    assignees: list[str]
    github_created_at: datetime | None
    github_updated_at: datetime | None
    synced_at: datetime | None
    stale: bool


class ResolutionResponse(BaseModel):
    status: str | None
    confidence: float | None
    analyzed_at: datetime | None
    skipped: bool
    stale: bool


class CIStatusResponse(BaseModel):
    state: str
    label: str
    severity: str
    animate: bool
    link: str | None
    total: int
    running: int
    passed: int
    failed: int


# Lifecycle

@router.delete("/{owner}/{name}", response_model=RepositoryRemovedResponse)
async def delete_repository(
    owner: Owner,
    name: Name,
    identity: AuthContext = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
    client: GitHubRestClient = Depends(get_github_client),
) -> RepositoryRemovedResponse:
    """Removes the repository and everything mirrored from it"""
    full_name = await remove_repository(db, client, owner, name, identity.user_id)
    return RepositoryRemovedResponse(success=True, repository=full_name)


# Sync

@router.post("/{owner}/{name}/sync", response_model=SyncTriggerResponse, status_code=202)
async def trigger_sync(
    owner: Owner,
    name: Name,
    background_tasks: BackgroundTasks,
    identity: AuthContext = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> SyncTriggerResponse:
    """
    Starts a full sync and returns at once; poll GET .../sync for progress.
    A sync already in flight is reported instead of started twice.
    """
    result = await start_repository_sync(db, owner, name, identity.user_id)
    if result.started:
        background_tasks.add_task(run_sync_in_background, result.run_id, identity.token)

    return SyncTriggerResponse(
        started=result.started,
        already_syncing=result.already_syncing,
        previous_synced_at=result.previous_synced_at,
        run_id=result.run_id,
    )


@router.get("/{owner}/{name}/sync", response_model=SyncStatus)
async def sync_status(
    owner: Owner,
    name: Name,
    identity: AuthContext = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> SyncStatus:
    status = await get_sync_status(db, f"{owner}/{name}")
    if status is None:
        raise RepositoryNotFoundError(f"{owner}/{name}")
    return status


# Subscription

@router.get("/{owner}/{name}/subscription", response_model=SubscriptionView)
async def read_subscription(
    owner: Owner,
    name: Name,
    identity: AuthContext = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> SubscriptionView:
    repository = await get_repository_for_user(db, f"{owner}/{name}", identity.user_id)
    subscription = await get_subscription(db, identity.user_id, repository.id)
    if subscription is None:
        raise SubscriptionNotFoundError(f"{owner}/{name}")
    return to_view(subscription)


@router.patch("/{owner}/{name}/subscription", response_model=SubscriptionView)
async def patch_subscription(
    owner: Owner,
    name: Name,
    body: SubscriptionUpdateRequest,
    identity: AuthContext = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> SubscriptionView:
    """Partial update; creates the default subscription first when none exists"""
    repository = await get_repository_for_user(db, f"{owner}/{name}", identity.user_id)
    repository_id = repository.id

    if body.preset is not None:
        try:
            await apply_preset(db, identity.user_id, repository_id, body.preset)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    changes = SubscriptionChannels(**body.model_dump(exclude={"preset"}))
    subscription = await update_subscription(db, identity.user_id, repository_id, changes)
    view = to_view(subscription)

    log_audit_event(
        AuditEvent.SUBSCRIPTION_UPDATED,
        user_id=identity.user_id,
        repository=f"{owner}/{name}",
        metadata={"preset": view.preset},
    )
    return view


@router.delete("/{owner}/{name}/subscription", status_code=204)
async def remove_subscription(
    owner: Owner,
    name: Name,
    identity: AuthContext = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> Response:
    repository = await get_repository_for_user(db, f"{owner}/{name}", identity.user_id)
    if not await delete_subscription(db, identity.user_id, repository.id):
        raise SubscriptionNotFoundError(f"{owner}/{name}")

    log_audit_event(AuditEvent.SUBSCRIPTION_DELETED, user_id=identity.user_id, repository=f"{owner}/{name}")
    return Response(status_code=204)


# Issues

@router.get("/{owner}/{name}/issues/{number}", response_model=IssueResponse)
async def read_issue(
    owner: Owner,
    name: Name,
    number: Annotated[int, Path(ge=1)],
    background_tasks: BackgroundTasks,
    identity: AuthContext = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
    client: GitHubRestClient = Depends(get_github_client),
) -> IssueResponse:
    """
    Read-through fetch. Never-synced issues are fetched before responding;
    stale ones come back with stale=true while a refresh runs afterwards.
    """
    full_name = f"{owner}/{name}"
    await get_repository_for_user(db, full_name, identity.user_id)

    def schedule_refresh(repository_id: int, repo_full_name: str, issue_number: int) -> None:
        background_tasks.add_task(
            refresh_issue_in_background,
            repository_id,
            repo_full_name,
            issue_number,
            identity.token,
        )

    view = await get_issue(db, client, full_name, number, schedule_refresh=schedule_refresh)
    return IssueResponse(**view.__dict__)


@router.post("/{owner}/{name}/issues/{number}/sync", response_model=IssueResponse)
async def sync_issue_now(
    owner: Owner,
    name: Name,
    number: Annotated[int, Path(ge=1)],
    identity: AuthContext = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
    client: GitHubRestClient = Depends(get_github_client),
) -> IssueResponse:
    """Refetches a mirrored issue with its comments and reviews before responding"""
    full_name = f"{owner}/{name}"
    await get_repository_for_user(db, full_name, identity.user_id)
    view = await resync_issue(db, client, full_name, number)

    log_audit_event(
        AuditEvent.ISSUE_SYNCED,
        user_id=identity.user_id,
        repository=full_name,
        metadata={"number": number},
    )
    return IssueResponse(**view.__dict__)


@router.get("/{owner}/{name}/issues/{number}/resolution", response_model=ResolutionResponse)
async def read_resolution(
    owner: Owner,
    name: Name,
    number: Annotated[int, Path(ge=1)],
    identity: AuthContext = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> ResolutionResponse:
    """Resolution analysis is skipped for closed issues and pull requests"""
    full_name = f"{owner}/{name}"
    await get_repository_for_user(db, full_name, identity.user_id)
    view = await get_resolution(db, full_name, number)
    return ResolutionResponse(**view.__dict__)


@router.get("/{owner}/{name}/issues/{number}/ci", response_model=CIStatusResponse | None)
async def read_ci_status(
    owner: Owner,
    name: Name,
    number: Annotated[int, Path(ge=1)],
    identity: AuthContext = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> CIStatusResponse | None:
    """Aggregated CI for a pull request head; null for issues and commits without runs"""
    full_name = f"{owner}/{name}"
    repository = await get_repository_for_user(db, full_name, identity.user_id)
    issue = await MirrorPersistence(db).get_issue_by_number(repository.id, number)
    if issue is None:
        raise IssueNotFoundError(f"{full_name}#{number}")

    status = await get_issue_ci_status(db, issue.id)
    if status is None:
        return None
    return CIStatusResponse(**status.__dict__)
