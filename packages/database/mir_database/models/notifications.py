from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .common import tz_column, utc_now


class RepositorySubscription(SQLModel, table=True):
    __tablename__ = "repository_subscriptions"
    __table_args__ = (sa.UniqueConstraint("user_id", "repository_id", name="uq_subscription_user_repo"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True, ondelete="CASCADE")
    repository_id: int = Field(foreign_key="repositories.id", index=True, ondelete="CASCADE")

    issues: bool = Field(default=True)
    pull_requests: bool = Field(default=True)
    releases: bool = Field(default=True)
    ci: bool = Field(default=True)
    mentions: bool = Field(default=True)
    activity: bool = Field(default=False)

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=tz_column(nullable=False, server_now=True),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=tz_column(nullable=False, server_now=True),
    )


class IssueSubscription(SQLModel, table=True):
    """Participation in a single issue (author, assignee, reviewer, commenter)"""

    __tablename__ = "issue_subscriptions"
    __table_args__ = (sa.UniqueConstraint("issue_id", "user_id", name="uq_issue_subscription"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    issue_id: int = Field(foreign_key="issues.id", index=True, ondelete="CASCADE")
    user_id: int = Field(foreign_key="users.id", index=True, ondelete="CASCADE")
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=tz_column(nullable=False, server_now=True),
    )


class Notification(SQLModel, table=True):
    __tablename__ = "notifications"
    __table_args__ = (
        sa.UniqueConstraint("user_id", "dedup_key", name="uq_notification_user_dedup"),
        sa.Index("ix_notification_user_read", "user_id", "read"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True, ondelete="CASCADE")
    type: str
    action: str
    body: Optional[str] = Field(default=None, sa_column=sa.Column(sa.Text))
    repository_id: int = Field(foreign_key="repositories.id", index=True, ondelete="CASCADE")
    issue_id: Optional[int] = Field(default=None, foreign_key="issues.id", ondelete="CASCADE")
    release_id: Optional[int] = Field(default=None, foreign_key="releases.id", ondelete="CASCADE")
    workflow_run_id: Optional[int] = Field(default=None, foreign_key="workflow_runs.id", ondelete="CASCADE")
    actor_id: Optional[int] = Field(default=None, foreign_key="users.id", ondelete="SET NULL")

    # Identifies the triggering change; a replayed change maps to the same key
    dedup_key: Optional[str] = Field(default=None, max_length=255)

    read: bool = Field(default=False)
    read_at: Optional[datetime] = Field(default=None, sa_column=tz_column())
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=tz_column(nullable=False, index=True, server_now=True),
    )
