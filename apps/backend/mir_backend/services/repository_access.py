from __future__ import annotations

from mir_database.models import Repository, RepositoryCollaborator
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from mir_backend.core.errors import RepositoryAccessDeniedError, RepositoryNotFoundError


async def is_collaborator(db: AsyncSession, repository_id: int, user_id: int) -> bool:
    result = await db.exec(
        select(RepositoryCollaborator.id).where(
            RepositoryCollaborator.repository_id == repository_id,
            RepositoryCollaborator.user_id == user_id,
        )
    )
    return result.first() is not None


async def get_repository_for_user(
    db: AsyncSession,
    full_name: str,
    user_id: int,
    require_collaborator: bool = False,
) -> Repository:
    """Mirrored repository visible to the user.

    Private repositories are only visible to collaborators; public ones to
    everyone unless require_collaborator is set.
    """
    result = await db.exec(select(Repository).where(Repository.full_name == full_name))
    repository = result.first()
    if repository is None:
        raise RepositoryNotFoundError(full_name)

    if (repository.private or require_collaborator) and not await is_collaborator(db, repository.id, user_id):
        raise RepositoryAccessDeniedError(f"user {user_id} on {full_name}")

    return repository


__all__ = ["get_repository_for_user", "is_collaborator"]
