"""Mirrored remote entities: repositories and everything hanging off them"""

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .common import github_id_column, tz_column, utc_now


class Repository(SQLModel, table=True):
    __tablename__ = "repositories"

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    installation_id: Optional[int] = Field(
        default=None, foreign_key="installations.id", index=True, ondelete="SET NULL"
    )
    name: str
    full_name: str = Field(index=True, unique=True)
    private: bool = Field(default=False)
    description: Optional[str] = Field(default=None)
    html_url: Optional[str] = Field(default=None)
    default_branch: Optional[str] = Field(default=None)
    archived: bool = Field(default=False)
    disabled: bool = Field(default=False)
    sync_enabled: bool = Field(default=True)

    # Sync lease: syncing is only honoured while sync_started_at is within the lease window
    syncing: bool = Field(default=False)
    sync_started_at: Optional[datetime] = Field(default=None, sa_column=tz_column())
    last_synced_at: Optional[datetime] = Field(default=None, sa_column=tz_column(index=True))

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=tz_column(nullable=False, server_now=True),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=tz_column(nullable=False, server_now=True),
    )


class RepositoryCollaborator(SQLModel, table=True):
    __tablename__ = "repository_collaborators"
    __table_args__ = (sa.UniqueConstraint("repository_id", "user_id", name="uq_collaborator_repo_user"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    repository_id: int = Field(foreign_key="repositories.id", index=True, ondelete="CASCADE")
    user_id: int = Field(foreign_key="users.id", index=True, ondelete="CASCADE")
    permission: str = Field(default="push")
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=tz_column(nullable=False, server_now=True),
    )


class Label(SQLModel, table=True):
    __tablename__ = "labels"

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    repository_id: int = Field(foreign_key="repositories.id", index=True, ondelete="CASCADE")
    name: str
    color: str = Field(default="ededed")
    description: Optional[str] = Field(default=None)
    is_default: bool = Field(default=False)


class Milestone(SQLModel, table=True):
    __tablename__ = "milestones"

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    repository_id: int = Field(foreign_key="repositories.id", index=True, ondelete="CASCADE")
    number: int
    title: str
    description: Optional[str] = Field(default=None)
    state: str = Field(default="open")
    html_url: Optional[str] = Field(default=None)
    open_issues: int = Field(default=0)
    closed_issues: int = Field(default=0)
    due_on: Optional[datetime] = Field(default=None, sa_column=tz_column())
    closed_at: Optional[datetime] = Field(default=None, sa_column=tz_column())


class IssueType(SQLModel, table=True):
    """Organization-level issue types, stored per repository that exposes them"""

    __tablename__ = "issue_types"
    __table_args__ = (sa.UniqueConstraint("repository_id", "github_id", name="uq_issue_type_repo"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column(unique=False))
    repository_id: int = Field(foreign_key="repositories.id", index=True, ondelete="CASCADE")
    name: str
    color: Optional[str] = Field(default=None)
    description: Optional[str] = Field(default=None)


class Issue(SQLModel, table=True):
    """Issues and pull requests share one table; pull_request tells them apart"""

    __tablename__ = "issues"
    __table_args__ = (sa.UniqueConstraint("repository_id", "number", name="uq_issue_repo_number"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    repository_id: int = Field(foreign_key="repositories.id", index=True, ondelete="CASCADE")
    milestone_id: Optional[int] = Field(default=None, foreign_key="milestones.id", ondelete="SET NULL")
    type_id: Optional[int] = Field(default=None, foreign_key="issue_types.id", ondelete="SET NULL")
    user_id: Optional[int] = Field(default=None, foreign_key="users.id", index=True, ondelete="SET NULL")
    closed_by_id: Optional[int] = Field(default=None, foreign_key="users.id", ondelete="SET NULL")
    merged_by_id: Optional[int] = Field(default=None, foreign_key="users.id", ondelete="SET NULL")

    pull_request: bool = Field(default=False, index=True)
    number: int
    title: str
    body: Optional[str] = Field(default=None, sa_column=sa.Column(sa.Text))
    state: str = Field(default="open", index=True)
    state_reason: Optional[str] = Field(default=None)
    html_url: Optional[str] = Field(default=None)
    locked: bool = Field(default=False)

    # Pull request only
    draft: bool = Field(default=False)
    merged: bool = Field(default=False)
    head_ref: Optional[str] = Field(default=None)
    head_sha: Optional[str] = Field(default=None, index=True)
    base_ref: Optional[str] = Field(default=None)
    base_sha: Optional[str] = Field(default=None)
    merged_at: Optional[datetime] = Field(default=None, sa_column=tz_column())

    closed_at: Optional[datetime] = Field(default=None, sa_column=tz_column())
    comment_count: int = Field(default=0)
    reaction_count: int = Field(default=0)

    # Freshness bookkeeping
    synced: bool = Field(default=False)
    synced_at: Optional[datetime] = Field(default=None, sa_column=tz_column())

    # Cached resolution analysis
    resolution_status: Optional[str] = Field(default=None)
    resolution_confidence: Optional[float] = Field(default=None)
    resolution_analyzed_at: Optional[datetime] = Field(default=None, sa_column=tz_column())

    github_created_at: Optional[datetime] = Field(default=None, sa_column=tz_column())
    github_updated_at: Optional[datetime] = Field(default=None, sa_column=tz_column())
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=tz_column(nullable=False, server_now=True),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=tz_column(nullable=False, server_now=True),
    )


class IssueAssignee(SQLModel, table=True):
    __tablename__ = "issue_assignees"
    __table_args__ = (sa.UniqueConstraint("issue_id", "user_id", name="uq_issue_assignee"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    issue_id: int = Field(foreign_key="issues.id", index=True, ondelete="CASCADE")
    user_id: int = Field(foreign_key="users.id", index=True, ondelete="CASCADE")
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=tz_column(nullable=False, server_now=True),
    )


class IssueLabel(SQLModel, table=True):
    __tablename__ = "issue_labels"
    __table_args__ = (sa.UniqueConstraint("issue_id", "label_id", name="uq_issue_label"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    issue_id: int = Field(foreign_key="issues.id", index=True, ondelete="CASCADE")
    label_id: int = Field(foreign_key="labels.id", index=True, ondelete="CASCADE")
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=tz_column(nullable=False, server_now=True),
    )


class IssueRequestedReviewer(SQLModel, table=True):
    __tablename__ = "issue_requested_reviewers"
    __table_args__ = (sa.UniqueConstraint("issue_id", "user_id", name="uq_issue_reviewer"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    issue_id: int = Field(foreign_key="issues.id", index=True, ondelete="CASCADE")
    user_id: int = Field(foreign_key="users.id", index=True, ondelete="CASCADE")
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=tz_column(nullable=False, server_now=True),
    )


class IssueComment(SQLModel, table=True):
    __tablename__ = "issue_comments"

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    issue_id: int = Field(foreign_key="issues.id", index=True, ondelete="CASCADE")
    user_id: Optional[int] = Field(default=None, foreign_key="users.id", ondelete="SET NULL")
    body: str = Field(default="", sa_column=sa.Column(sa.Text, nullable=False, server_default=""))
    html_url: Optional[str] = Field(default=None)
    github_created_at: Optional[datetime] = Field(default=None, sa_column=tz_column())
    github_updated_at: Optional[datetime] = Field(default=None, sa_column=tz_column())


class IssueReview(SQLModel, table=True):
    __tablename__ = "issue_reviews"

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    issue_id: int = Field(foreign_key="issues.id", index=True, ondelete="CASCADE")
    user_id: Optional[int] = Field(default=None, foreign_key="users.id", ondelete="SET NULL")
    body: Optional[str] = Field(default=None, sa_column=sa.Column(sa.Text))
    state: str
    commit_id: Optional[str] = Field(default=None)
    html_url: Optional[str] = Field(default=None)
    submitted_at: Optional[datetime] = Field(default=None, sa_column=tz_column())


class IssueReviewComment(SQLModel, table=True):
    __tablename__ = "issue_review_comments"

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    issue_id: int = Field(foreign_key="issues.id", index=True, ondelete="CASCADE")
    review_id: Optional[int] = Field(default=None, foreign_key="issue_reviews.id", ondelete="SET NULL")
    user_id: Optional[int] = Field(default=None, foreign_key="users.id", ondelete="SET NULL")
    body: str = Field(default="", sa_column=sa.Column(sa.Text, nullable=False, server_default=""))
    path: Optional[str] = Field(default=None)
    line: Optional[int] = Field(default=None)
    side: Optional[str] = Field(default=None)
    commit_id: Optional[str] = Field(default=None)
    diff_hunk: Optional[str] = Field(default=None, sa_column=sa.Column(sa.Text))
    html_url: Optional[str] = Field(default=None)
    github_created_at: Optional[datetime] = Field(default=None, sa_column=tz_column())
    github_updated_at: Optional[datetime] = Field(default=None, sa_column=tz_column())


class Release(SQLModel, table=True):
    __tablename__ = "releases"

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    repository_id: int = Field(foreign_key="repositories.id", index=True, ondelete="CASCADE")
    author_id: Optional[int] = Field(default=None, foreign_key="users.id", ondelete="SET NULL")
    tag_name: str
    name: Optional[str] = Field(default=None)
    body: Optional[str] = Field(default=None, sa_column=sa.Column(sa.Text))
    draft: bool = Field(default=False)
    prerelease: bool = Field(default=False)
    html_url: Optional[str] = Field(default=None)
    published_at: Optional[datetime] = Field(default=None, sa_column=tz_column())


class WorkflowRun(SQLModel, table=True):
    """Workflow runs and check runs, told apart by kind (workflow or check)"""

    __tablename__ = "workflow_runs"

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    repository_id: int = Field(foreign_key="repositories.id", index=True, ondelete="CASCADE")
    issue_id: Optional[int] = Field(default=None, foreign_key="issues.id", index=True, ondelete="SET NULL")
    actor_id: Optional[int] = Field(default=None, foreign_key="users.id", ondelete="SET NULL")
    kind: str = Field(default="workflow")
    name: str
    workflow_name: Optional[str] = Field(default=None)
    head_branch: Optional[str] = Field(default=None)
    head_sha: str = Field(index=True)
    event: Optional[str] = Field(default=None)
    status: str = Field(default="queued")
    conclusion: Optional[str] = Field(default=None)
    html_url: Optional[str] = Field(default=None)
    run_number: Optional[int] = Field(default=None)
    run_attempt: int = Field(default=1)
    started_at: Optional[datetime] = Field(default=None, sa_column=tz_column())
    completed_at: Optional[datetime] = Field(default=None, sa_column=tz_column())
    github_created_at: Optional[datetime] = Field(default=None, sa_column=tz_column())
