"""
Webhook ingestion: verify, parse, route, notify.

The signature is checked against the raw bytes before anything is parsed or
written. Routing goes through the HANDLERS table; unknown events and actions
are acknowledged without side effects.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime

from mir_database.models import WebhookDelivery
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from mir_backend.core.audit import AuditEvent, log_audit_event
from mir_backend.core.errors import MalformedPayloadError, WebhookSignatureError
from mir_backend.core.security import verify_webhook_signature
from mir_backend.ingestion.delivery_tracker import DeliveryTracker
from mir_backend.ingestion.reconciler import EntityReconciler
from mir_backend.ingestion.webhook_handlers import HANDLERS, HandlerContext, WebhookEvent
from mir_backend.services.notification_service import dispatch

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    event: str
    action: str | None
    delivery_id: str
    handled: bool
    duplicate: bool = False
    changes: int = 0
    notifications: int = 0
    notes: list[str] = field(default_factory=list)


def parse_payload(raw_body: bytes) -> dict:
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedPayloadError(f"invalid JSON body: {e}")
    if not isinstance(payload, dict):
        raise MalformedPayloadError("webhook body must be a JSON object")
    return payload


async def _already_processed(session: AsyncSession, tracker: DeliveryTracker | None, delivery_id: str) -> bool:
    if tracker is not None and await tracker.seen(delivery_id):
        return True
    result = await session.exec(select(WebhookDelivery.id).where(WebhookDelivery.delivery_id == delivery_id))
    return result.first() is not None


async def _record_delivery(
    session: AsyncSession,
    tracker: DeliveryTracker | None,
    delivery_id: str,
    event: str,
    action: str | None,
) -> None:
    session.add(WebhookDelivery(delivery_id=delivery_id, event=event, action=action))
    try:
        await session.commit()
    except IntegrityError:
        # The same delivery finished concurrently
        await session.rollback()
    if tracker is not None:
        await tracker.remember(delivery_id)


async def ingest(
    raw_body: bytes,
    signature_header: str | None,
    event_type: str | None,
    delivery_id: str | None,
    session: AsyncSession,
    secret: str,
    tracker: DeliveryTracker | None = None,
    ip_address: str | None = None,
) -> IngestResult:
    try:
        verify_webhook_signature(raw_body, signature_header, secret)
    except WebhookSignatureError:
        log_audit_event(
            AuditEvent.WEBHOOK_REJECTED,
            delivery_id=delivery_id,
            ip_address=ip_address,
            metadata={"event": event_type},
        )
        raise

    if not event_type or not delivery_id:
        raise MalformedPayloadError("missing event or delivery header")

    payload = parse_payload(raw_body)
    action = payload.get("action")
    result = IngestResult(event=event_type, action=action, delivery_id=delivery_id, handled=False)

    try:
        event = WebhookEvent(event_type)
    except ValueError:
        logger.debug(f"Ignoring unhandled event {event_type}", extra={"delivery_id": delivery_id})
        return result

    handler = HANDLERS[event]
    if not handler.accepts(action):
        logger.debug(f"Ignoring {event_type}.{action}", extra={"delivery_id": delivery_id})
        return result

    if await _already_processed(session, tracker, delivery_id):
        logger.info(f"Skipping redelivered {event_type}.{action}", extra={"delivery_id": delivery_id})
        result.duplicate = True
        return result

    context = HandlerContext(
        session=session,
        reconciler=EntityReconciler(session),
        event=event,
        action=action,
        delivery_id=delivery_id,
    )
    try:
        changes = await handler.handle(context, payload)
    except (KeyError, TypeError, ValueError) as e:
        # pydantic.ValidationError is a ValueError
        await session.rollback()
        raise MalformedPayloadError(f"{event_type}.{action}: {e}")

    result.handled = True
    result.changes = len(changes)

    for change in changes:
        notifications = await dispatch(session, change)
        result.notifications += len(notifications)

    await _record_delivery(session, tracker, delivery_id, event_type, action)

    logger.info(
        f"Ingested {event_type}.{action}: {result.changes} changes, {result.notifications} notifications",
        extra={"delivery_id": delivery_id, "event": event_type, "action": action},
    )
    return result


async def prune_deliveries(session: AsyncSession, older_than: datetime) -> int:
    result = await session.exec(
        delete(WebhookDelivery)
        .where(WebhookDelivery.received_at < older_than)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount or 0
