"""
Notification dispatch and the per-user notification inbox.

Fan-out for a change goes to channel subscribers of the repository,
issue participants with the activity channel on, direct recipients
(assignment, review request) and mentioned users with the mentions channel
on. The actor is never notified and shadow users never receive anything.
Rows are keyed by (user_id, dedup_key) so a replayed change is a no-op.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime

from mir_database.models import (
    Issue,
    IssueSubscription,
    Notification,
    Release,
    Repository,
    RepositorySubscription,
    User,
    WorkflowRun,
)
from mir_shared.constants import MENTION_PATTERN, NOTIFICATION_ACTIONS, NOTIFICATION_TYPES
from pydantic import BaseModel
from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from mir_backend.core.audit import AuditEvent, log_audit_event
from mir_backend.core.clock import utcnow
from mir_backend.core.errors import InvalidReferenceError, NotificationNotFoundError

logger = logging.getLogger(__name__)

MENTION_RE = re.compile(MENTION_PATTERN)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


@dataclass
class ChangeEvent:
    """A user-visible change in the mirror, produced only when stored state changed"""
    category: str
    type: str
    action: str
    repository_id: int
    dedup_key: str
    issue_id: int | None = None
    release_id: int | None = None
    workflow_run_id: int | None = None
    actor_id: int | None = None
    body: str | None = None
    mention_text: str | None = None
    direct_recipient_ids: frozenset = field(default_factory=frozenset)
    participant_ids: frozenset = field(default_factory=frozenset)
    # False for changes aimed at specific users (assignment, review request)
    broadcast: bool = True


def extract_mentions(text: str | None) -> set[str]:
    """Lower-cased logins referenced as @login"""
    if not text:
        return set()
    return {match.lower() for match in MENTION_RE.findall(text)}


async def _mentioned_user_ids(db: AsyncSession, text: str | None) -> set[int]:
    logins = extract_mentions(text)
    if not logins:
        return set()
    result = await db.exec(select(User.id).where(func.lower(User.login).in_(logins)))
    return set(result.all())


async def _participant_ids(db: AsyncSession, event: ChangeEvent) -> set[int]:
    participants = set(event.participant_ids)
    if event.issue_id is not None:
        result = await db.exec(select(IssueSubscription.user_id).where(IssueSubscription.issue_id == event.issue_id))
        participants.update(result.all())
    return participants


async def resolve_recipients(db: AsyncSession, event: ChangeEvent) -> dict[int, str]:
    """Maps each recipient to the action their notification carries"""
    result = await db.exec(
        select(RepositorySubscription).where(RepositorySubscription.repository_id == event.repository_id)
    )
    subscriptions = {row.user_id: row for row in result.all()}

    recipients: dict[int, str] = {}

    if event.broadcast:
        for user_id, subscription in subscriptions.items():
            if getattr(subscription, event.category, False):
                recipients[user_id] = event.action

        for user_id in await _participant_ids(db, event):
            subscription = subscriptions.get(user_id)
            if subscription is not None and subscription.activity:
                recipients.setdefault(user_id, event.action)

    for user_id in event.direct_recipient_ids:
        recipients.setdefault(user_id, event.action)

    for user_id in await _mentioned_user_ids(db, event.mention_text):
        subscription = subscriptions.get(user_id)
        if subscription is not None and subscription.mentions:
            recipients[user_id] = "mentioned"

    recipients.pop(event.actor_id, None)
    if not recipients:
        return {}

    registered = await db.exec(
        select(User.id).where(User.id.in_(list(recipients)), User.registered.is_(True))
    )
    allowed = set(registered.all())
    return {user_id: action for user_id, action in recipients.items() if user_id in allowed}


async def dispatch(db: AsyncSession, event: ChangeEvent) -> list[Notification]:
    recipients = await resolve_recipients(db, event)
    if not recipients:
        return []

    existing = await db.exec(
        select(Notification.user_id).where(
            Notification.dedup_key == event.dedup_key,
            Notification.user_id.in_(list(recipients)),
        )
    )
    already_notified = set(existing.all())

    created: list[Notification] = []
    for user_id, action in recipients.items():
        if user_id in already_notified:
            continue
        notification = Notification(
            user_id=user_id,
            type=event.type,
            action=action,
            body=event.body,
            repository_id=event.repository_id,
            issue_id=event.issue_id,
            release_id=event.release_id,
            workflow_run_id=event.workflow_run_id,
            actor_id=event.actor_id,
            dedup_key=event.dedup_key,
        )
        db.add(notification)
        created.append(notification)

    if not created:
        logger.debug(f"Change {event.dedup_key} already dispatched")
        return []

    try:
        await db.commit()
    except IntegrityError:
        # A concurrent replay of the same change won the insert
        await db.rollback()
        logger.info(f"Change {event.dedup_key} dispatched concurrently; skipping")
        return []

    logger.info(
        f"Dispatched {event.type}.{event.action} to {len(created)} users",
        extra={"dedup_key": event.dedup_key, "repository_id": event.repository_id, "recipients": len(created)},
    )
    return created


# Inbox

class NotificationDraft(BaseModel):
    """Client-held copy of a deleted notification, used to undo the delete"""
    type: str
    action: str
    body: str | None = None
    repository_id: int
    issue_id: int | None = None
    release_id: int | None = None
    workflow_run_id: int | None = None
    actor_id: int | None = None
    read: bool = False
    created_at: datetime | None = None


async def list_notifications(
    db: AsyncSession,
    user_id: int,
    unread_only: bool = False,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> list[Notification]:
    statement = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        statement = statement.where(Notification.read.is_(False))
    statement = (
        statement.order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset(offset)
        .limit(min(limit, MAX_PAGE_SIZE))
    )
    result = await db.exec(statement)
    return list(result.all())


async def count_unread(db: AsyncSession, user_id: int) -> int:
    result = await db.exec(
        select(func.count()).select_from(Notification).where(
            Notification.user_id == user_id,
            Notification.read.is_(False),
        )
    )
    return result.one()


async def _get_owned(db: AsyncSession, user_id: int, notification_id: int) -> Notification:
    result = await db.exec(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id,
        )
    )
    notification = result.first()
    if notification is None:
        raise NotificationNotFoundError(str(notification_id))
    return notification


async def mark_read(
    db: AsyncSession,
    user_id: int,
    notification_id: int,
    read: bool = True,
) -> Notification:
    """Sets or clears the read flag; only the owner can change it"""
    notification = await _get_owned(db, user_id, notification_id)
    notification.read = read
    notification.read_at = utcnow() if read else None
    await db.commit()
    return notification


async def mark_unread(db: AsyncSession, user_id: int, notification_id: int) -> Notification:
    return await mark_read(db, user_id, notification_id, read=False)


async def mark_all_read(db: AsyncSession, user_id: int) -> int:
    result = await db.exec(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
        .values(read=True, read_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    await db.commit()
    return result.rowcount or 0


async def delete_notification(db: AsyncSession, user_id: int, notification_id: int) -> None:
    notification = await _get_owned(db, user_id, notification_id)
    await db.delete(notification)
    await db.commit()


async def clear_read(db: AsyncSession, user_id: int) -> int:
    result = await db.exec(
        delete(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(True))
        .execution_options(synchronize_session="fetch")
    )
    await db.commit()
    return result.rowcount or 0


async def _require(db: AsyncSession, model, field_name: str, value: int | None) -> None:
    if value is None:
        return
    result = await db.exec(select(model.id).where(model.id == value))
    if result.first() is None:
        raise InvalidReferenceError(field_name, value)


async def recreate_notification(
    db: AsyncSession,
    user_id: int,
    draft: NotificationDraft,
) -> Notification:
    """
    Re-inserts a notification the user deleted. Every reference is checked
    before the write so a dangling id is rejected instead of failing at commit.
    """
    if draft.type not in NOTIFICATION_TYPES:
        raise InvalidReferenceError("type", draft.type)
    if draft.action not in NOTIFICATION_ACTIONS:
        raise InvalidReferenceError("action", draft.action)

    subjects = [value for value in (draft.issue_id, draft.release_id, draft.workflow_run_id) if value is not None]
    if len(subjects) > 1:
        raise InvalidReferenceError("subject", subjects[1])

    await _require(db, Repository, "repository_id", draft.repository_id)
    await _require(db, Issue, "issue_id", draft.issue_id)
    await _require(db, Release, "release_id", draft.release_id)
    await _require(db, WorkflowRun, "workflow_run_id", draft.workflow_run_id)
    await _require(db, User, "actor_id", draft.actor_id)

    notification = Notification(
        user_id=user_id,
        type=draft.type,
        action=draft.action,
        body=draft.body,
        repository_id=draft.repository_id,
        issue_id=draft.issue_id,
        release_id=draft.release_id,
        workflow_run_id=draft.workflow_run_id,
        actor_id=draft.actor_id,
        read=draft.read,
        read_at=utcnow() if draft.read else None,
        created_at=draft.created_at or utcnow(),
    )
    db.add(notification)
    await db.commit()

    log_audit_event(
        AuditEvent.NOTIFICATION_RECREATED,
        user_id=user_id,
        metadata={"notification_id": notification.id, "type": draft.type, "action": draft.action},
    )
    return notification


async def prune_read_notifications(db: AsyncSession, older_than: datetime) -> int:
    result = await db.exec(
        delete(Notification)
        .where(Notification.read.is_(True), Notification.created_at < older_than)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0
