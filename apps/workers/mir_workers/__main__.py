"""
Single entrypoint for IssueMirror worker jobs.

Usage:
    JOB_TYPE=scheduled_sync python -m mir_workers   # Re-sync repositories past the sync interval
    JOB_TYPE=sync_resume python -m mir_workers      # Resume runs interrupted by a dead process
    JOB_TYPE=janitor python -m mir_workers          # Prune notifications and deliveries, release leases
"""

import asyncio
import logging
import os
import signal
import sys

from mir_workers.logging_config import setup_logging


class GracefulShutdown:
    """Signal-driven stop flag checked by long-running jobs between units of work."""

    def __init__(self):
        self._shutdown_event = asyncio.Event()

    def signal_handler(self, signum: int) -> None:
        logger = logging.getLogger(__name__)
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self._shutdown_event.set()

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event


async def run_worker_task(job_type: str, shutdown: GracefulShutdown) -> dict:
    """Run the specified worker job."""

    match job_type:
        case "scheduled_sync":
            from mir_workers.jobs.scheduled_sync_job import run_scheduled_sync_job
            return await run_scheduled_sync_job(shutdown.shutdown_event)

        case "sync_resume":
            from mir_workers.jobs.sync_resume_job import run_sync_resume_job
            return await run_sync_resume_job()

        case "janitor":
            from mir_workers.jobs.janitor_job import run_janitor_job
            return await run_janitor_job()

        case _:
            raise ValueError(f"Unknown job type: {job_type}")


async def main() -> None:
    job_id = setup_logging()
    logger = logging.getLogger(__name__)

    job_type = os.getenv("JOB_TYPE", "scheduled_sync").lower()

    logger.info(
        "Starting job",
        extra={"job_type": job_type, "job_id": job_id},
    )

    shutdown = GracefulShutdown()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: shutdown.signal_handler(s))

    try:
        result = await run_worker_task(job_type, shutdown)
        logger.info(
            "Job completed successfully",
            extra={"job_type": job_type, "result": result},
        )
    except Exception as exc:
        logger.exception(
            f"Job failed: {exc}",
            extra={"job_type": job_type},
        )
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
