"""
Repository sync orchestration.

A sync is a fixed sequence of named steps. Each step takes primitives and
returns a JSON-serialisable result that is checkpointed on the SyncRun row,
so an interrupted run resumes at the first step that has not completed.
Transient remote failures are retried per step, never for the whole run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID

from mir_database.models import Label, Milestone, Repository, RepositoryCollaborator, SyncRun
from mir_database.session import async_session_factory
from pydantic import BaseModel
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from mir_backend.core.audit import AuditEvent, log_audit_event
from mir_backend.core.clock import as_utc, utcnow
from mir_backend.core.config import get_settings
from mir_backend.core.errors import RepositoryAccessDeniedError, SyncInProgressError, SyncRunNotFoundError
from mir_backend.ingestion.client_factory import open_github_client
from mir_backend.ingestion.github_client import GitHubAPIError, GitHubRateLimitError, GitHubRestClient
from mir_backend.ingestion.payloads import GitHubIssue
from mir_backend.ingestion.persistence import MirrorPersistence
from mir_backend.ingestion.reconciler import EntityReconciler
from mir_backend.services.subscription_service import ensure_default_subscription

logger = logging.getLogger(__name__)

SYNC_STEPS: tuple[str, ...] = (
    "repository",
    "collaborators",
    "verify_access",
    "labels",
    "milestones",
    "issue_types",
    "issues",
    "mark_synced",
    "subscription",
)

HEARTBEAT_EVERY_ENTITIES = 100
MAX_RETRY_DELAY_SECONDS = 60.0


class SyncRunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class RunState:
    """Primitive copy of a SyncRun row; the workflow never holds ORM objects across steps"""
    run_id: UUID
    owner: str
    repo: str
    user_id: int | None
    repository_id: int | None
    status: str
    completed_steps: list[str] = field(default_factory=list)
    step_results: dict = field(default_factory=dict)
    attempts: int = 0

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass
class SyncSummary:
    run_id: UUID | None
    repository_id: int | None
    status: str
    completed_steps: list[str]
    step_results: dict
    already_syncing: bool = False


@dataclass
class SyncTriggerResult:
    started: bool
    already_syncing: bool
    previous_synced_at: datetime | None
    run_id: UUID | None = None


class SyncRunView(BaseModel):
    id: UUID
    status: str
    current_step: str | None
    completed_steps: list[str]
    error: str | None
    started_at: datetime
    finished_at: datetime | None


class SyncStatus(BaseModel):
    full_name: str
    syncing: bool
    last_synced_at: datetime | None
    latest_run: SyncRunView | None


def lease_cutoff(now: datetime | None = None) -> datetime:
    return (now or utcnow()) - timedelta(seconds=get_settings().sync_lease_seconds)


def is_lease_held(repository: Repository, now: datetime | None = None) -> bool:
    """A syncing flag older than the lease window belongs to a dead process"""
    if not repository.syncing:
        return False
    if repository.sync_started_at is None:
        return False
    return as_utc(repository.sync_started_at) >= lease_cutoff(now)


async def try_acquire_sync_lease(
    session: AsyncSession,
    repository_id: int,
    now: datetime | None = None,
) -> bool:
    """Atomically claims the syncing flag unless a live lease holds it"""
    now = now or utcnow()
    result = await session.exec(
        update(Repository)
        .where(
            Repository.id == repository_id,
            or_(
                Repository.syncing.is_(False),
                Repository.sync_started_at.is_(None),
                Repository.sync_started_at < lease_cutoff(now),
            ),
        )
        .values(syncing=True, sync_started_at=now)
        .execution_options(synchronize_session="fetch")
    )
    await session.commit()
    return (result.rowcount or 0) == 1


async def clear_syncing_flag(session: AsyncSession, repository_id: int) -> None:
    await session.exec(
        update(Repository)
        .where(Repository.id == repository_id)
        .values(syncing=False, sync_started_at=None)
        .execution_options(synchronize_session="fetch")
    )
    await session.commit()


async def release_expired_leases(session: AsyncSession, now: datetime | None = None) -> int:
    result = await session.exec(
        update(Repository)
        .where(
            Repository.syncing.is_(True),
            or_(
                Repository.sync_started_at.is_(None),
                Repository.sync_started_at < lease_cutoff(now),
            ),
        )
        .values(syncing=False, sync_started_at=None)
        .execution_options(synchronize_session="fetch")
    )
    await session.commit()
    return result.rowcount or 0


async def create_sync_run(
    session: AsyncSession,
    owner: str,
    repo: str,
    user_id: int | None,
    repository_id: int | None = None,
) -> UUID:
    run = SyncRun(
        owner=owner,
        repo=repo,
        requested_by_user_id=user_id,
        repository_id=repository_id,
        status=SyncRunStatus.PENDING.value,
    )
    session.add(run)
    await session.commit()
    return run.id


class RepositorySyncWorkflow:
    def __init__(self, session: AsyncSession, client: GitHubRestClient):
        self._session = session
        self._client = client
        self._reconciler = EntityReconciler(session)
        self._persistence: MirrorPersistence = self._reconciler.persistence
        self._settings = get_settings()
        self._holds_lease = False
        self._handlers: dict[str, Callable[[RunState], Awaitable[dict]]] = {
            "repository": self._step_repository,
            "collaborators": self._step_collaborators,
            "verify_access": self._step_verify_access,
            "labels": self._step_labels,
            "milestones": self._step_milestones,
            "issue_types": self._step_issue_types,
            "issues": self._step_issues,
            "mark_synced": self._step_mark_synced,
            "subscription": self._step_subscription,
        }

    # Run bookkeeping

    async def _load_state(self, run_id: UUID) -> RunState:
        result = await self._session.exec(select(SyncRun).where(SyncRun.id == run_id))
        run = result.first()
        if run is None:
            raise SyncRunNotFoundError(str(run_id))
        return RunState(
            run_id=run.id,
            owner=run.owner,
            repo=run.repo,
            user_id=run.requested_by_user_id,
            repository_id=run.repository_id,
            status=run.status,
            completed_steps=list(run.completed_steps or []),
            step_results=dict(run.step_results or {}),
            attempts=run.attempts,
        )

    async def _write_run(self, state: RunState, **values) -> None:
        await self._session.exec(
            update(SyncRun)
            .where(SyncRun.id == state.run_id)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        await self._session.commit()

    async def _checkpoint(self, state: RunState) -> None:
        await self._write_run(
            state,
            repository_id=state.repository_id,
            completed_steps=list(state.completed_steps),
            step_results=dict(state.step_results),
            heartbeat_at=utcnow(),
        )

    async def _heartbeat(self, state: RunState) -> None:
        await self._write_run(state, heartbeat_at=utcnow())

    async def run(self, run_id: UUID, lease_held: bool = False) -> SyncSummary:
        """
        Drives the run to completion. lease_held means the caller already
        claimed the repository's syncing lease for this run; otherwise the
        workflow claims it and leaves the run untouched when another sync
        holds it.
        """
        state = await self._load_state(run_id)
        if state.status == SyncRunStatus.SUCCEEDED.value:
            return self._summary(state)

        self._holds_lease = lease_held and state.repository_id is not None
        if (
            not self._holds_lease
            and state.repository_id is not None
            and "mark_synced" not in state.completed_steps
        ):
            if not await try_acquire_sync_lease(self._session, state.repository_id):
                logger.info(
                    f"Sync of {state.full_name} already in progress; leaving run {state.run_id} as {state.status}",
                    extra={"run_id": str(state.run_id), "repository": state.full_name},
                )
                summary = self._summary(state)
                summary.already_syncing = True
                return summary
            self._holds_lease = True

        resumed = bool(state.completed_steps)
        await self._write_run(state, status=SyncRunStatus.RUNNING.value, heartbeat_at=utcnow(), error=None)
        state.status = SyncRunStatus.RUNNING.value

        logger.info(
            f"{'Resuming' if resumed else 'Starting'} sync of {state.full_name}",
            extra={"run_id": str(state.run_id), "repository": state.full_name, "completed": state.completed_steps},
        )

        try:
            for index, step in enumerate(SYNC_STEPS, start=1):
                if step in state.completed_steps:
                    continue

                await self._write_run(state, current_step=step, heartbeat_at=utcnow())
                logger.info(
                    f"[{state.full_name}] Step {index}/{len(SYNC_STEPS)}: {step}",
                    extra={"run_id": str(state.run_id), "step": step},
                )

                result = await self._run_step_with_retry(step, state)

                state.completed_steps.append(step)
                state.step_results[step] = result
                await self._checkpoint(state)

        except BaseException as exc:
            await self._fail(state, exc)
            raise

        state.status = SyncRunStatus.SUCCEEDED.value
        await self._write_run(
            state,
            status=state.status,
            current_step=None,
            finished_at=utcnow(),
        )
        log_audit_event(
            AuditEvent.SYNC_COMPLETED,
            user_id=state.user_id,
            repository=state.full_name,
            metadata={"run_id": str(state.run_id), "results": state.step_results.get("issues")},
        )
        logger.info(
            f"Sync of {state.full_name} completed",
            extra={"run_id": str(state.run_id), "results": state.step_results},
        )
        return self._summary(state)

    def _summary(self, state: RunState) -> SyncSummary:
        return SyncSummary(
            run_id=state.run_id,
            repository_id=state.repository_id,
            status=state.status,
            completed_steps=list(state.completed_steps),
            step_results=dict(state.step_results),
        )

    async def _run_step_with_retry(self, step: str, state: RunState) -> dict:
        handler = self._handlers[step]
        max_attempts = max(1, self._settings.sync_step_max_attempts)

        for attempt in range(1, max_attempts + 1):
            try:
                return await handler(state)
            except GitHubAPIError as e:
                if not e.is_transient or attempt == max_attempts:
                    raise

                await self._session.rollback()
                state.attempts += 1
                delay = self._retry_delay(e, attempt)
                logger.warning(
                    f"[{state.full_name}] Step {step} failed with transient error, retrying in {delay:.1f}s: {e}",
                    extra={"run_id": str(state.run_id), "step": step, "attempt": attempt},
                )
                await self._write_run(state, attempts=state.attempts, heartbeat_at=utcnow())
                await asyncio.sleep(delay)

        raise RuntimeError("unreachable")

    def _retry_delay(self, error: GitHubAPIError, attempt: int) -> float:
        delay = self._settings.sync_step_retry_delay_seconds * attempt
        if isinstance(error, GitHubRateLimitError) and error.reset_at:
            delay = max(delay, error.reset_at - utcnow().timestamp())
        return min(delay, MAX_RETRY_DELAY_SECONDS)

    async def _fail(self, state: RunState, exc: BaseException) -> None:
        await self._session.rollback()

        # Another run's lease is never released here
        if self._holds_lease and state.repository_id is not None:
            await clear_syncing_flag(self._session, state.repository_id)
            self._holds_lease = False

        state.status = SyncRunStatus.FAILED.value
        await self._write_run(
            state,
            status=state.status,
            error=f"{type(exc).__name__}: {exc}"[:2000],
            finished_at=utcnow(),
        )

        event = AuditEvent.SYNC_DENIED if isinstance(exc, RepositoryAccessDeniedError) else AuditEvent.SYNC_FAILED
        log_audit_event(
            event,
            user_id=state.user_id,
            repository=state.full_name,
            metadata={"run_id": str(state.run_id), "error": type(exc).__name__},
        )
        logger.error(
            f"Sync of {state.full_name} failed: {exc}",
            extra={"run_id": str(state.run_id), "completed": state.completed_steps},
        )

    async def _write_repository_flags(self, repository_id: int, **values) -> None:
        await self._session.exec(
            update(Repository)
            .where(Repository.id == repository_id)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session="fetch")
        )
        await self._session.commit()

    # Steps

    async def _step_repository(self, state: RunState) -> dict:
        remote = await self._client.get_repository(state.owner, state.repo)
        repository, created = await self._persistence.upsert_repository(remote)
        await self._session.commit()
        state.repository_id = repository.id

        if not self._holds_lease:
            if not await try_acquire_sync_lease(self._session, repository.id):
                raise SyncInProgressError(state.full_name)
            self._holds_lease = True

        return {"repository_id": repository.id, "full_name": repository.full_name, "created": created}

    async def _step_collaborators(self, state: RunState) -> dict:
        try:
            remote = await self._client.list_collaborators(state.owner, state.repo)
        except GitHubAPIError as e:
            if e.status_code == 403 and not isinstance(e, GitHubRateLimitError):
                raise RepositoryAccessDeniedError(f"cannot list collaborators of {state.full_name}")
            raise

        delta, maintainer_ids = await self._reconciler.reconcile_collaborators(state.repository_id, remote)
        for user_id in maintainer_ids:
            await ensure_default_subscription(self._session, user_id, state.repository_id, commit=False)
        await self._session.commit()

        return {
            "maintainers": len(maintainer_ids),
            "added": len(delta.to_insert),
            "removed": len(delta.to_delete),
        }

    async def _step_verify_access(self, state: RunState) -> dict:
        if state.user_id is None:
            return {"verified": False, "skipped": True}

        result = await self._session.exec(
            select(RepositoryCollaborator.id).where(
                RepositoryCollaborator.repository_id == state.repository_id,
                RepositoryCollaborator.user_id == state.user_id,
            )
        )
        if result.first() is None:
            raise RepositoryAccessDeniedError(f"user {state.user_id} is not a collaborator of {state.full_name}")
        return {"verified": True, "skipped": False}

    async def _step_labels(self, state: RunState) -> dict:
        remote = await self._client.list_labels(state.owner, state.repo)
        for label in remote:
            await self._persistence.upsert_label(state.repository_id, label)

        local = await self._session.exec(select(Label.github_id).where(Label.repository_id == state.repository_id))
        removed = set(local.all()) - {label.id for label in remote}
        for github_id in removed:
            await self._persistence.delete_label(github_id)

        await self._session.commit()
        return {"labels": len(remote), "removed": len(removed)}

    async def _step_milestones(self, state: RunState) -> dict:
        remote = await self._client.list_milestones(state.owner, state.repo)
        for milestone in remote:
            await self._persistence.upsert_milestone(state.repository_id, milestone)

        local = await self._session.exec(
            select(Milestone.github_id).where(Milestone.repository_id == state.repository_id)
        )
        removed = set(local.all()) - {milestone.id for milestone in remote}
        for github_id in removed:
            await self._persistence.delete_milestone(github_id)

        await self._session.commit()
        return {"milestones": len(remote), "removed": len(removed)}

    async def _step_issue_types(self, state: RunState) -> dict:
        remote = await self._client.list_issue_types(state.owner)
        for issue_type in remote:
            await self._persistence.upsert_issue_type(state.repository_id, issue_type)
        await self._session.commit()
        return {"issue_types": len(remote)}

    async def _apply_listed(self, state: RunState, payload: GitHubIssue, counts: dict) -> None:
        try:
            await self._reconciler.apply_issue(state.repository_id, payload)
        except IntegrityError as e:
            await self._session.rollback()
            counts["skipped"] += 1
            logger.warning(
                f"[{state.full_name}] Skipping #{payload.number}: {e.orig}",
                extra={"run_id": str(state.run_id), "number": payload.number},
            )
            return

        processed = counts["issues"] + counts["pull_requests"] + 1
        if processed % HEARTBEAT_EVERY_ENTITIES == 0:
            await self._heartbeat(state)

    async def _step_issues(self, state: RunState) -> dict:
        counts = {"issues": 0, "pull_requests": 0, "skipped": 0}

        async for issue in self._client.iter_issues(state.owner, state.repo):
            await self._apply_listed(state, issue, counts)
            counts["issues"] += 1

        async for pull_request in self._client.iter_pull_requests(state.owner, state.repo):
            await self._apply_listed(state, pull_request, counts)
            counts["pull_requests"] += 1

        return counts

    async def _step_mark_synced(self, state: RunState) -> dict:
        now = utcnow()
        await self._write_repository_flags(
            state.repository_id,
            last_synced_at=now,
            syncing=False,
            sync_started_at=None,
        )
        self._holds_lease = False
        return {"last_synced_at": now.isoformat()}

    async def _step_subscription(self, state: RunState) -> dict:
        if state.user_id is None:
            return {"created": False, "skipped": True}
        _, created = await ensure_default_subscription(self._session, state.user_id, state.repository_id)
        return {"created": created, "skipped": False}


async def run_sync(
    session: AsyncSession,
    client: GitHubRestClient,
    run_id: UUID,
    lease_held: bool = False,
) -> SyncSummary:
    return await RepositorySyncWorkflow(session, client).run(run_id, lease_held=lease_held)


async def resume_sync_run(session: AsyncSession, client: GitHubRestClient, run_id: UUID) -> SyncSummary:
    """
    Re-enters an interrupted run at its first incomplete step. The dead
    process's lease must have expired; a live lease leaves the run for a
    later attempt.
    """
    return await RepositorySyncWorkflow(session, client).run(run_id)


async def sync_repository(
    session: AsyncSession,
    client: GitHubRestClient,
    owner: str,
    repo: str,
    requesting_user_id: int | None,
) -> SyncSummary:
    """Synchronous full sync: claims the lease, creates the run row and drives it to completion"""
    full_name = f"{owner}/{repo}"
    repository = await MirrorPersistence(session).get_repository_by_full_name(full_name)
    repository_id = repository.id if repository else None

    if repository_id is not None and not await try_acquire_sync_lease(session, repository_id):
        logger.info(f"Sync of {full_name} already in progress; not starting another")
        return SyncSummary(
            run_id=None,
            repository_id=repository_id,
            status=SyncRunStatus.SKIPPED.value,
            completed_steps=[],
            step_results={},
            already_syncing=True,
        )

    run_id = await create_sync_run(session, owner, repo, requesting_user_id, repository_id)
    return await run_sync(session, client, run_id, lease_held=repository_id is not None)


async def start_repository_sync(
    session: AsyncSession,
    owner: str,
    repo: str,
    requesting_user_id: int,
) -> SyncTriggerResult:
    """
    Claims the sync lease and records a pending run; the caller drives the run
    in the background. A live lease short-circuits with already_syncing.
    """
    full_name = f"{owner}/{repo}"
    repository = await MirrorPersistence(session).get_repository_by_full_name(full_name)

    previous_synced_at = None
    repository_id = None
    if repository is not None:
        repository_id = repository.id
        previous_synced_at = as_utc(repository.last_synced_at)
        if not await try_acquire_sync_lease(session, repository_id):
            logger.info(f"Sync of {full_name} already in progress; not starting another")
            return SyncTriggerResult(
                started=False,
                already_syncing=True,
                previous_synced_at=previous_synced_at,
            )

    run_id = await create_sync_run(session, owner, repo, requesting_user_id, repository_id)
    log_audit_event(
        AuditEvent.SYNC_STARTED,
        user_id=requesting_user_id,
        repository=full_name,
        metadata={"run_id": str(run_id)},
    )
    return SyncTriggerResult(
        started=True,
        already_syncing=False,
        previous_synced_at=previous_synced_at,
        run_id=run_id,
    )


async def get_sync_status(session: AsyncSession, full_name: str) -> SyncStatus | None:
    repository = await MirrorPersistence(session).get_repository_by_full_name(full_name)
    owner, _, repo = full_name.partition("/")

    result = await session.exec(
        select(SyncRun)
        .where(SyncRun.owner == owner, SyncRun.repo == repo)
        .order_by(SyncRun.started_at.desc())
        .limit(1)
    )
    run = result.first()

    if repository is None and run is None:
        return None

    latest_run = None
    if run is not None:
        latest_run = SyncRunView(
            id=run.id,
            status=run.status,
            current_step=run.current_step,
            completed_steps=list(run.completed_steps or []),
            error=run.error,
            started_at=as_utc(run.started_at),
            finished_at=as_utc(run.finished_at),
        )

    return SyncStatus(
        full_name=full_name,
        syncing=is_lease_held(repository) if repository else False,
        last_synced_at=as_utc(repository.last_synced_at) if repository else None,
        latest_run=latest_run,
    )


async def find_interrupted_runs(session: AsyncSession, now: datetime | None = None) -> list[UUID]:
    """Runs still marked running whose heartbeat is older than the lease window"""
    result = await session.exec(
        select(SyncRun.id).where(
            SyncRun.status == SyncRunStatus.RUNNING.value,
            or_(SyncRun.heartbeat_at.is_(None), SyncRun.heartbeat_at < lease_cutoff(now)),
        )
    )
    return list(result.all())


async def run_sync_in_background(run_id: UUID, token: str) -> None:
    """Drives a started run after the response; its outcome lands on the run row"""
    try:
        async with async_session_factory() as session, open_github_client(token) as client:
            await run_sync(session, client, run_id, lease_held=True)
    except Exception as e:
        logger.warning(f"Background sync run {run_id} ended with error: {e}", extra={"run_id": str(run_id)})
