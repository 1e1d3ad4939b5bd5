import os
from datetime import datetime

import pytest

os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("WEBHOOK_SECRET", "test_webhook_secret_for_testing_only")
os.environ.setdefault("GIT_TOKEN", "test_git_token")
os.environ["REDIS_URL"] = ""  # Force in-memory delivery tracking and quota limits for tests

import mir_database.models  # noqa: E402, F401  registers every table
from mir_database.models import (  # noqa: E402
    Issue,
    IssueSubscription,
    Repository,
    RepositoryCollaborator,
    RepositorySubscription,
    User,
    WorkflowRun,
)
from mir_shared.constants import DEFAULT_SUBSCRIPTION  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402
from sqlmodel.ext.asyncio.session import AsyncSession  # noqa: E402

WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]


@pytest.fixture(autouse=True)
async def reset_global_state():
    """
    Ensure global singletons are reset between tests to prevent:
    1. 'Event loop is closed' errors (from stale Redis clients)
    2. State leakage between tests
    """
    from mir_backend.api.dependencies import reset_delivery_tracker_for_testing
    from mir_backend.core.config import get_settings
    from mir_backend.core.redis import close_redis, reset_redis_for_testing

    # Clean before
    get_settings.cache_clear()
    reset_redis_for_testing()
    reset_delivery_tracker_for_testing()

    yield

    # Clean after
    await close_redis()
    reset_redis_for_testing()
    reset_delivery_tracker_for_testing()
    get_settings.cache_clear()


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session(engine):
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


class Seeder:
    """Inserts the minimum rows a test needs and returns their ids"""

    def __init__(self, session: AsyncSession):
        self._session = session
        self._next_github_id = 1000

    def _github_id(self) -> int:
        self._next_github_id += 1
        return self._next_github_id

    async def _add(self, row):
        self._session.add(row)
        await self._session.commit()
        return row

    async def user(self, login: str, registered: bool = True, github_id: int | None = None) -> int:
        user = await self._add(User(github_id=github_id or self._github_id(), login=login, registered=registered))
        return user.id

    async def repository(
        self,
        full_name: str = "octo/widgets",
        github_id: int = 500,
        private: bool = False,
        **fields,
    ) -> int:
        repository = await self._add(
            Repository(
                github_id=github_id,
                name=full_name.split("/")[1],
                full_name=full_name,
                private=private,
                **fields,
            )
        )
        return repository.id

    async def collaborator(self, repository_id: int, user_id: int, permission: str = "push") -> None:
        await self._add(RepositoryCollaborator(repository_id=repository_id, user_id=user_id, permission=permission))

    async def subscription(self, user_id: int, repository_id: int, **channels) -> None:
        values = {**DEFAULT_SUBSCRIPTION, **channels}
        await self._add(RepositorySubscription(user_id=user_id, repository_id=repository_id, **values))

    async def issue(
        self,
        repository_id: int,
        number: int = 1,
        user_id: int | None = None,
        github_id: int | None = None,
        **fields,
    ) -> int:
        values = {"title": f"Issue {number}", "state": "open", **fields}
        issue = await self._add(
            Issue(
                github_id=github_id or self._github_id(),
                repository_id=repository_id,
                number=number,
                user_id=user_id,
                **values,
            )
        )
        return issue.id

    async def participant(self, issue_id: int, user_id: int) -> None:
        await self._add(IssueSubscription(issue_id=issue_id, user_id=user_id))

    async def workflow_run(
        self,
        repository_id: int,
        head_sha: str,
        name: str = "ci",
        status: str = "completed",
        conclusion: str | None = "success",
        run_attempt: int = 1,
        github_created_at: datetime | None = None,
        **fields,
    ) -> int:
        run = await self._add(
            WorkflowRun(
                github_id=self._github_id(),
                repository_id=repository_id,
                head_sha=head_sha,
                name=name,
                status=status,
                conclusion=conclusion,
                run_attempt=run_attempt,
                github_created_at=github_created_at,
                **fields,
            )
        )
        return run.id


@pytest.fixture
def seed(session) -> Seeder:
    return Seeder(session)
