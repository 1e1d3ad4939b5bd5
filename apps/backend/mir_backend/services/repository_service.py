"""
Repository lifecycle service.
Removing a repository drops its mirror and every dependent row; a later sync
mirrors it again from scratch.
"""
import logging

from sqlmodel.ext.asyncio.session import AsyncSession

from mir_backend.core.audit import AuditEvent, log_audit_event
from mir_backend.core.errors import RepositoryAccessDeniedError, SyncInProgressError
from mir_backend.ingestion.github_client import GitHubAPIError, GitHubRestClient
from mir_backend.ingestion.persistence import MirrorPersistence
from mir_backend.services.repository_access import get_repository_for_user
from mir_backend.services.sync_service import is_lease_held

logger = logging.getLogger(__name__)


async def remove_repository(
    db: AsyncSession,
    client: GitHubRestClient,
    owner: str,
    name: str,
    user_id: int,
) -> str:
    """
    Deletes a mirrored repository with its issues, relations, subscriptions,
    notifications and sync runs.

    Args:
        db: Database session
        client: Remote client acting with the caller's credential
        owner: Repository owner login
        name: Repository name
        user_id: Caller; must see the repository locally and upstream

    Returns:
        The removed repository's full name

    Raises:
        RepositoryNotFoundError: not mirrored
        RepositoryAccessDeniedError: caller cannot read it upstream
        SyncInProgressError: a live sync holds the repository's lease
    """
    full_name = f"{owner}/{name}"
    repository = await get_repository_for_user(db, full_name, user_id)

    try:
        await client.get_repository(owner, name)
    except GitHubAPIError as e:
        if e.is_transient:
            raise
        raise RepositoryAccessDeniedError(f"user {user_id} cannot read {full_name} upstream")

    if is_lease_held(repository):
        raise SyncInProgressError(full_name)

    repository_id = repository.id
    await MirrorPersistence(db).delete_repository(repository_id)
    await db.commit()

    logger.info(f"Removed {full_name} from the mirror", extra={"repository": full_name, "user_id": user_id})
    log_audit_event(
        AuditEvent.REPOSITORY_REMOVED,
        user_id=user_id,
        repository=full_name,
        metadata={"repository_id": repository_id},
    )
    return full_name


__all__ = ["remove_repository"]
