"""Security events logged as JSON to stdout for log ingestion"""
import json
import logging
from datetime import UTC, datetime
from enum import Enum

logger = logging.getLogger("audit")


class AuditEvent(str, Enum):
    WEBHOOK_REJECTED = "webhook_rejected"
    SYNC_STARTED = "sync_started"
    SYNC_DENIED = "sync_denied"
    SYNC_FAILED = "sync_failed"
    SYNC_COMPLETED = "sync_completed"
    REPOSITORY_REMOVED = "repository_removed"
    ISSUE_SYNCED = "issue_synced"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    NOTIFICATION_RECREATED = "notification_recreated"


def log_audit_event(
    event: AuditEvent,
    user_id: int | None = None,
    repository: str | None = None,
    delivery_id: str | None = None,
    ip_address: str | None = None,
    metadata: dict | None = None,
) -> None:
    entry = {
        "timestamp": datetime.now(UTC).isoformat(),
        "event": event.value,
        "user_id": user_id,
        "repository": repository,
        "delivery_id": delivery_id,
        "ip_address": ip_address,
    }

    if metadata:
        entry.update(metadata)

    entry = {k: v for k, v in entry.items() if v is not None}

    logger.info(json.dumps(entry, default=str))
