"""
Resumes sync runs left in running state by a process that died.
Each run re-enters at its first incomplete step; completed steps are not repeated.
"""

import logging

from mir_backend.core.config import get_settings
from mir_backend.ingestion.client_factory import open_github_client
from mir_backend.services.sync_service import find_interrupted_runs, resume_sync_run
from mir_database.session import async_session_factory

logger = logging.getLogger(__name__)


async def run_sync_resume_job() -> dict:
    settings = get_settings()
    if not settings.git_token:
        logger.error("GIT_TOKEN not configured; interrupted runs cannot be resumed")
        return {"interrupted": 0, "resumed": 0, "skipped": 0, "failed": 0}

    async with async_session_factory() as session:
        run_ids = await find_interrupted_runs(session)

    if not run_ids:
        logger.info("No interrupted sync runs")
        return {"interrupted": 0, "resumed": 0, "skipped": 0, "failed": 0}

    logger.info(f"Resuming {len(run_ids)} interrupted sync runs", extra={"interrupted": len(run_ids)})

    resumed = skipped = failed = 0
    async with open_github_client(settings.git_token) as client:
        for run_id in run_ids:
            async with async_session_factory() as session:
                try:
                    summary = await resume_sync_run(session, client, run_id)
                except Exception as e:
                    failed += 1
                    logger.warning(f"Resume of sync run {run_id} failed: {e}", extra={"run_id": str(run_id)})
                    continue

            if summary.already_syncing:
                skipped += 1
                logger.info(f"Sync run {run_id} left for later: repository is syncing elsewhere", extra={"run_id": str(run_id)})
                continue

            resumed += 1
            logger.info(
                f"Resumed sync run {run_id}: {summary.status}",
                extra={"run_id": str(run_id), "completed_steps": summary.completed_steps},
            )

    return {"interrupted": len(run_ids), "resumed": resumed, "skipped": skipped, "failed": failed}
