"""API routes for the caller's notification inbox."""
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response
from mir_database.models import Notification
from pydantic import BaseModel
from sqlmodel.ext.asyncio.session import AsyncSession

from mir_backend.api.dependencies import get_db
from mir_backend.core.clock import as_utc
from mir_backend.middleware.auth import AuthContext, require_identity
from mir_backend.services.notification_service import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    NotificationDraft,
    clear_read,
    count_unread,
    delete_notification,
    list_notifications,
    mark_all_read,
    mark_read,
    recreate_notification,
)

router = APIRouter()


# Request/Response Models

class NotificationResponse(BaseModel):
    id: int
    type: str
    action: str
    body: str | None
    repository_id: int
    issue_id: int | None
    release_id: int | None
    workflow_run_id: int | None
    actor_id: int | None
    read: bool
    read_at: datetime | None
    created_at: datetime


class NotificationListResponse(BaseModel):
    notifications: list[NotificationResponse]
    unread_count: int
    limit: int
    offset: int


class UnreadCountResponse(BaseModel):
    unread_count: int


class ReadStateRequest(BaseModel):
    read: bool


class BulkResult(BaseModel):
    affected: int


def _to_response(notification: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=notification.id,
        type=notification.type,
        action=notification.action,
        body=notification.body,
        repository_id=notification.repository_id,
        issue_id=notification.issue_id,
        release_id=notification.release_id,
        workflow_run_id=notification.workflow_run_id,
        actor_id=notification.actor_id,
        read=notification.read,
        read_at=as_utc(notification.read_at),
        created_at=as_utc(notification.created_at),
    )


# Endpoints

@router.get("", response_model=NotificationListResponse)
async def get_notifications(
    identity: AuthContext = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
    unread_only: Annotated[bool, Query()] = False,
    limit: Annotated[int, Query(ge=1, le=MAX_PAGE_SIZE)] = DEFAULT_PAGE_SIZE,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> NotificationListResponse:
    """Newest first"""
    notifications = await list_notifications(db, identity.user_id, unread_only, limit, offset)
    return NotificationListResponse(
        notifications=[_to_response(n) for n in notifications],
        unread_count=await count_unread(db, identity.user_id),
        limit=limit,
        offset=offset,
    )


@router.get("/count", response_model=UnreadCountResponse)
async def get_unread_count(
    identity: AuthContext = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> UnreadCountResponse:
    return UnreadCountResponse(unread_count=await count_unread(db, identity.user_id))


@router.post("/read-all", response_model=BulkResult)
async def read_all(
    identity: AuthContext = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> BulkResult:
    return BulkResult(affected=await mark_all_read(db, identity.user_id))


@router.delete("/read", response_model=BulkResult)
async def delete_read(
    identity: AuthContext = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> BulkResult:
    """Removes every read notification of the caller"""
    return BulkResult(affected=await clear_read(db, identity.user_id))


@router.post("", response_model=NotificationResponse, status_code=201)
async def restore_notification(
    draft: NotificationDraft,
    identity: AuthContext = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> NotificationResponse:
    """
    Undo for a delete. References are validated up front; a dangling id
    is a 400, never a 500.
    """
    notification = await recreate_notification(db, identity.user_id, draft)
    return _to_response(notification)


@router.patch("/{notification_id}", response_model=NotificationResponse)
async def set_read_state(
    notification_id: int,
    body: ReadStateRequest,
    identity: AuthContext = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> NotificationResponse:
    notification = await mark_read(db, identity.user_id, notification_id, read=body.read)
    return _to_response(notification)


@router.delete("/{notification_id}", status_code=204)
async def remove_notification(
    notification_id: int,
    identity: AuthContext = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await delete_notification(db, identity.user_id, notification_id)
    return Response(status_code=204)
