"""
Periodic re-sync of mirrored repositories whose last full sync is older than
the configured interval. Runs with the service credential and credits the run
to whoever requested the last successful sync.
"""

import asyncio
import logging
from datetime import timedelta

from mir_backend.core.clock import utcnow
from mir_backend.core.config import get_settings
from mir_backend.ingestion.client_factory import open_github_client
from mir_backend.services.sync_service import (
    SyncRunStatus,
    create_sync_run,
    run_sync,
    try_acquire_sync_lease,
)
from mir_database.models import Repository, SyncRun
from mir_database.session import async_session_factory
from sqlmodel import or_, select

logger = logging.getLogger(__name__)


async def find_due_repositories(session, now=None) -> list[tuple[int, str]]:
    cutoff = (now or utcnow()) - timedelta(hours=get_settings().scheduled_sync_interval_hours)
    result = await session.exec(
        select(Repository.id, Repository.full_name)
        .where(
            Repository.sync_enabled.is_(True),
            Repository.archived.is_(False),
            or_(Repository.last_synced_at.is_(None), Repository.last_synced_at < cutoff),
        )
        .order_by(Repository.last_synced_at)
    )
    return list(result.all())


async def last_requester(session, repository_id: int) -> int | None:
    result = await session.exec(
        select(SyncRun.requested_by_user_id)
        .where(
            SyncRun.repository_id == repository_id,
            SyncRun.status == SyncRunStatus.SUCCEEDED.value,
        )
        .order_by(SyncRun.finished_at.desc())
        .limit(1)
    )
    return result.first()


async def run_scheduled_sync_job(shutdown_event: asyncio.Event | None = None) -> dict:
    """
    Returns stats dict with due, synced, skipped and failed counts.
    A repository whose lease is held elsewhere is skipped, not waited on.
    """
    settings = get_settings()
    if not settings.git_token:
        logger.error("GIT_TOKEN not configured; scheduled sync cannot run")
        return {"due": 0, "synced": 0, "skipped": 0, "failed": 0}

    async with async_session_factory() as session:
        due = await find_due_repositories(session)

    logger.info(f"Scheduled sync: {len(due)} repositories due", extra={"due": len(due)})

    synced = skipped = failed = 0
    async with open_github_client(settings.git_token) as client:
        for repository_id, full_name in due:
            if shutdown_event is not None and shutdown_event.is_set():
                logger.info("Shutdown requested; stopping scheduled sync early")
                break

            owner, _, repo = full_name.partition("/")
            async with async_session_factory() as session:
                if not await try_acquire_sync_lease(session, repository_id):
                    skipped += 1
                    logger.info(f"Skipping {full_name}: sync already in progress")
                    continue

                requester = await last_requester(session, repository_id)
                run_id = await create_sync_run(session, owner, repo, requester, repository_id)
                try:
                    await run_sync(session, client, run_id, lease_held=True)
                except Exception as e:
                    failed += 1
                    logger.warning(
                        f"Scheduled sync of {full_name} failed: {e}",
                        extra={"repository": full_name, "run_id": str(run_id)},
                    )
                    continue

            synced += 1
            logger.info(
                f"Scheduled sync of {full_name} complete",
                extra={"repository": full_name, "run_id": str(run_id)},
            )

    return {"due": len(due), "synced": synced, "skipped": skipped, "failed": failed}
