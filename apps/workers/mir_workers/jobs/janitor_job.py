"""
Periodic cleanup: read notifications past retention, webhook delivery
records past the dedup window, and sync leases abandoned by dead processes.
"""

import logging
from datetime import timedelta

from mir_backend.core.clock import utcnow
from mir_backend.core.config import get_settings
from mir_backend.services.notification_service import prune_read_notifications
from mir_backend.services.sync_service import release_expired_leases
from mir_backend.services.webhook_service import prune_deliveries
from mir_database.session import async_session_factory

logger = logging.getLogger(__name__)


async def run_janitor_job() -> dict:
    """Returns stats dict with notifications_pruned, deliveries_pruned and leases_released"""
    settings = get_settings()
    now = utcnow()

    logger.info("Starting Janitor")

    async with async_session_factory() as session:
        notifications_pruned = await prune_read_notifications(
            session, now - timedelta(days=settings.notification_retention_days)
        )
        deliveries_pruned = await prune_deliveries(
            session, now - timedelta(seconds=settings.webhook_delivery_ttl_seconds)
        )

    # Release sync leases abandoned by dead processes
    leases_released = 0
    try:
        async with async_session_factory() as session:
            leases_released = await release_expired_leases(session, now)
        if leases_released > 0:
            logger.info(
                f"Released {leases_released} abandoned sync leases",
                extra={"leases_released": leases_released},
            )
    except Exception as e:
        logger.warning(f"Lease release failed (non-fatal): {e}")

    logger.info(
        f"Janitor complete: pruned {notifications_pruned} notifications, "
        f"{deliveries_pruned} delivery records",
        extra={
            "notifications_pruned": notifications_pruned,
            "deliveries_pruned": deliveries_pruned,
        },
    )

    return {
        "notifications_pruned": notifications_pruned,
        "deliveries_pruned": deliveries_pruned,
        "leases_released": leases_released,
    }
