"""initial mirror schema

Revision ID: m1a2b3c4d5e6
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
import sqlmodel

# revision identifiers, used by Alembic.
revision: str = "m1a2b3c4d5e6"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

AutoString = sqlmodel.sql.sqltypes.AutoString


def _ts(name: str, nullable: bool = True, server_now: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if server_now else None,
    )


def _github_id(unique: bool = True) -> sa.Column:
    return sa.Column("github_id", sa.BigInteger(), nullable=False, unique=unique, index=True)


def _fk(name: str, target: str, nullable: bool = False, ondelete: str = "CASCADE") -> sa.Column:
    return sa.Column(
        name,
        sa.Integer(),
        sa.ForeignKey(target, ondelete=ondelete),
        nullable=nullable,
    )


def upgrade() -> None:
    """Create every mirror table."""
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        _github_id(),
        sa.Column("login", AutoString(), nullable=False, index=True),
        sa.Column("name", AutoString(), nullable=True),
        sa.Column("email", AutoString(), nullable=True),
        sa.Column("avatar_url", AutoString(), nullable=True),
        sa.Column("registered", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at", nullable=False, server_now=True),
        _ts("updated_at", nullable=False, server_now=True),
    )

    op.create_table(
        "installations",
        sa.Column("id", sa.Integer(), primary_key=True),
        _github_id(),
        sa.Column("account_id", sa.BigInteger(), nullable=False),
        sa.Column("account_login", AutoString(), nullable=False),
        sa.Column("account_type", AutoString(), nullable=False, server_default="User"),
        sa.Column("avatar_url", AutoString(), nullable=True),
        sa.Column("suspended", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at", nullable=False, server_now=True),
        _ts("updated_at", nullable=False, server_now=True),
    )

    op.create_table(
        "repositories",
        sa.Column("id", sa.Integer(), primary_key=True),
        _github_id(),
        _fk("installation_id", "installations.id", nullable=True, ondelete="SET NULL"),
        sa.Column("name", AutoString(), nullable=False),
        sa.Column("full_name", AutoString(), nullable=False, unique=True, index=True),
        sa.Column("private", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("description", AutoString(), nullable=True),
        sa.Column("html_url", AutoString(), nullable=True),
        sa.Column("default_branch", AutoString(), nullable=True),
        sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("disabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sync_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("syncing", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("sync_started_at"),
        _ts("last_synced_at"),
        _ts("created_at", nullable=False, server_now=True),
        _ts("updated_at", nullable=False, server_now=True),
    )
    op.create_index("ix_repositories_installation_id", "repositories", ["installation_id"])
    op.create_index("ix_repositories_last_synced_at", "repositories", ["last_synced_at"])

    op.create_table(
        "repository_collaborators",
        sa.Column("id", sa.Integer(), primary_key=True),
        _fk("repository_id", "repositories.id"),
        _fk("user_id", "users.id"),
        sa.Column("permission", AutoString(), nullable=False, server_default="push"),
        _ts("created_at", nullable=False, server_now=True),
        sa.UniqueConstraint("repository_id", "user_id", name="uq_collaborator_repo_user"),
    )

    op.create_table(
        "labels",
        sa.Column("id", sa.Integer(), primary_key=True),
        _github_id(),
        _fk("repository_id", "repositories.id"),
        sa.Column("name", AutoString(), nullable=False),
        sa.Column("color", AutoString(), nullable=False, server_default="ededed"),
        sa.Column("description", AutoString(), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
    )

    op.create_table(
        "milestones",
        sa.Column("id", sa.Integer(), primary_key=True),
        _github_id(),
        _fk("repository_id", "repositories.id"),
        sa.Column("number", sa.Integer(), nullable=False),
        sa.Column("title", AutoString(), nullable=False),
        sa.Column("description", AutoString(), nullable=True),
        sa.Column("state", AutoString(), nullable=False, server_default="open"),
        sa.Column("html_url", AutoString(), nullable=True),
        sa.Column("open_issues", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("closed_issues", sa.Integer(), nullable=False, server_default="0"),
        _ts("due_on"),
        _ts("closed_at"),
    )

    op.create_table(
        "issue_types",
        sa.Column("id", sa.Integer(), primary_key=True),
        _github_id(unique=False),
        _fk("repository_id", "repositories.id"),
        sa.Column("name", AutoString(), nullable=False),
        sa.Column("color", AutoString(), nullable=True),
        sa.Column("description", AutoString(), nullable=True),
        sa.UniqueConstraint("repository_id", "github_id", name="uq_issue_type_repo"),
    )

    op.create_table(
        "issues",
        sa.Column("id", sa.Integer(), primary_key=True),
        _github_id(),
        _fk("repository_id", "repositories.id"),
        _fk("milestone_id", "milestones.id", nullable=True, ondelete="SET NULL"),
        _fk("type_id", "issue_types.id", nullable=True, ondelete="SET NULL"),
        _fk("user_id", "users.id", nullable=True, ondelete="SET NULL"),
        _fk("closed_by_id", "users.id", nullable=True, ondelete="SET NULL"),
        _fk("merged_by_id", "users.id", nullable=True, ondelete="SET NULL"),
        sa.Column("pull_request", sa.Boolean(), nullable=False, server_default=sa.false(), index=True),
        sa.Column("number", sa.Integer(), nullable=False),
        sa.Column("title", AutoString(), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("state", AutoString(), nullable=False, server_default="open", index=True),
        sa.Column("state_reason", AutoString(), nullable=True),
        sa.Column("html_url", AutoString(), nullable=True),
        sa.Column("locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("draft", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("merged", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("head_ref", AutoString(), nullable=True),
        sa.Column("head_sha", AutoString(), nullable=True, index=True),
        sa.Column("base_ref", AutoString(), nullable=True),
        sa.Column("base_sha", AutoString(), nullable=True),
        _ts("merged_at"),
        _ts("closed_at"),
        sa.Column("comment_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reaction_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("synced", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("synced_at"),
        sa.Column("resolution_status", AutoString(), nullable=True),
        sa.Column("resolution_confidence", sa.Float(), nullable=True),
        _ts("resolution_analyzed_at"),
        _ts("github_created_at"),
        _ts("github_updated_at"),
        _ts("created_at", nullable=False, server_now=True),
        _ts("updated_at", nullable=False, server_now=True),
        sa.UniqueConstraint("repository_id", "number", name="uq_issue_repo_number"),
    )
    op.create_index("ix_issues_repository_id", "issues", ["repository_id"])
    op.create_index("ix_issues_user_id", "issues", ["user_id"])

    for table, member_column, member_target, constraint in (
        ("issue_assignees", "user_id", "users.id", "uq_issue_assignee"),
        ("issue_labels", "label_id", "labels.id", "uq_issue_label"),
        ("issue_requested_reviewers", "user_id", "users.id", "uq_issue_reviewer"),
        ("issue_subscriptions", "user_id", "users.id", "uq_issue_subscription"),
    ):
        op.create_table(
            table,
            sa.Column("id", sa.Integer(), primary_key=True),
            _fk("issue_id", "issues.id"),
            _fk(member_column, member_target),
            _ts("created_at", nullable=False, server_now=True),
            sa.UniqueConstraint("issue_id", member_column, name=constraint),
        )
        op.create_index(f"ix_{table}_issue_id", table, ["issue_id"])
        op.create_index(f"ix_{table}_{member_column}", table, [member_column])

    op.create_table(
        "issue_comments",
        sa.Column("id", sa.Integer(), primary_key=True),
        _github_id(),
        _fk("issue_id", "issues.id"),
        _fk("user_id", "users.id", nullable=True, ondelete="SET NULL"),
        sa.Column("body", sa.Text(), nullable=False, server_default=""),
        sa.Column("html_url", AutoString(), nullable=True),
        _ts("github_created_at"),
        _ts("github_updated_at"),
    )
    op.create_index("ix_issue_comments_issue_id", "issue_comments", ["issue_id"])

    op.create_table(
        "issue_reviews",
        sa.Column("id", sa.Integer(), primary_key=True),
        _github_id(),
        _fk("issue_id", "issues.id"),
        _fk("user_id", "users.id", nullable=True, ondelete="SET NULL"),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("state", AutoString(), nullable=False),
        sa.Column("commit_id", AutoString(), nullable=True),
        sa.Column("html_url", AutoString(), nullable=True),
        _ts("submitted_at"),
    )
    op.create_index("ix_issue_reviews_issue_id", "issue_reviews", ["issue_id"])

    op.create_table(
        "issue_review_comments",
        sa.Column("id", sa.Integer(), primary_key=True),
        _github_id(),
        _fk("issue_id", "issues.id"),
        _fk("review_id", "issue_reviews.id", nullable=True, ondelete="SET NULL"),
        _fk("user_id", "users.id", nullable=True, ondelete="SET NULL"),
        sa.Column("body", sa.Text(), nullable=False, server_default=""),
        sa.Column("path", AutoString(), nullable=True),
        sa.Column("line", sa.Integer(), nullable=True),
        sa.Column("side", AutoString(), nullable=True),
        sa.Column("commit_id", AutoString(), nullable=True),
        sa.Column("diff_hunk", sa.Text(), nullable=True),
        sa.Column("html_url", AutoString(), nullable=True),
        _ts("github_created_at"),
        _ts("github_updated_at"),
    )
    op.create_index("ix_issue_review_comments_issue_id", "issue_review_comments", ["issue_id"])

    op.create_table(
        "releases",
        sa.Column("id", sa.Integer(), primary_key=True),
        _github_id(),
        _fk("repository_id", "repositories.id"),
        _fk("author_id", "users.id", nullable=True, ondelete="SET NULL"),
        sa.Column("tag_name", AutoString(), nullable=False),
        sa.Column("name", AutoString(), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("draft", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("prerelease", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("html_url", AutoString(), nullable=True),
        _ts("published_at"),
    )

    op.create_table(
        "workflow_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        _github_id(),
        _fk("repository_id", "repositories.id"),
        _fk("issue_id", "issues.id", nullable=True, ondelete="SET NULL"),
        _fk("actor_id", "users.id", nullable=True, ondelete="SET NULL"),
        sa.Column("kind", AutoString(), nullable=False, server_default="workflow"),
        sa.Column("name", AutoString(), nullable=False),
        sa.Column("workflow_name", AutoString(), nullable=True),
        sa.Column("head_branch", AutoString(), nullable=True),
        sa.Column("head_sha", AutoString(), nullable=False, index=True),
        sa.Column("event", AutoString(), nullable=True),
        sa.Column("status", AutoString(), nullable=False, server_default="queued"),
        sa.Column("conclusion", AutoString(), nullable=True),
        sa.Column("html_url", AutoString(), nullable=True),
        sa.Column("run_number", sa.Integer(), nullable=True),
        sa.Column("run_attempt", sa.Integer(), nullable=False, server_default="1"),
        _ts("started_at"),
        _ts("completed_at"),
        _ts("github_created_at"),
    )
    op.create_index("ix_workflow_runs_issue_id", "workflow_runs", ["issue_id"])

    op.create_table(
        "repository_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        _fk("user_id", "users.id"),
        _fk("repository_id", "repositories.id"),
        sa.Column("issues", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("pull_requests", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("releases", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("ci", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("mentions", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("activity", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at", nullable=False, server_now=True),
        _ts("updated_at", nullable=False, server_now=True),
        sa.UniqueConstraint("user_id", "repository_id", name="uq_subscription_user_repo"),
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        _fk("user_id", "users.id"),
        sa.Column("type", AutoString(), nullable=False),
        sa.Column("action", AutoString(), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        _fk("repository_id", "repositories.id"),
        _fk("issue_id", "issues.id", nullable=True),
        _fk("release_id", "releases.id", nullable=True),
        _fk("workflow_run_id", "workflow_runs.id", nullable=True),
        _fk("actor_id", "users.id", nullable=True, ondelete="SET NULL"),
        sa.Column("dedup_key", AutoString(length=255), nullable=True),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("read_at"),
        _ts("created_at", nullable=False, server_now=True),
        sa.UniqueConstraint("user_id", "dedup_key", name="uq_notification_user_dedup"),
    )
    op.create_index("ix_notification_user_read", "notifications", ["user_id", "read"])
    op.create_index("ix_notifications_created_at", "notifications", ["created_at"])

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("owner", AutoString(), nullable=False),
        sa.Column("repo", AutoString(), nullable=False),
        _fk("requested_by_user_id", "users.id", nullable=True, ondelete="SET NULL"),
        _fk("repository_id", "repositories.id", nullable=True),
        sa.Column("status", AutoString(), nullable=False, server_default="pending", index=True),
        sa.Column("current_step", AutoString(), nullable=True),
        sa.Column("completed_steps", sa.JSON(), nullable=False),
        sa.Column("step_results", sa.JSON(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        _ts("started_at", nullable=False, server_now=True),
        _ts("heartbeat_at"),
        _ts("finished_at"),
    )
    op.create_index("ix_sync_runs_heartbeat_at", "sync_runs", ["heartbeat_at"])

    op.create_table(
        "webhook_deliveries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("delivery_id", AutoString(length=64), nullable=False, unique=True, index=True),
        sa.Column("event", AutoString(), nullable=False),
        sa.Column("action", AutoString(), nullable=True),
        _ts("received_at", nullable=False, server_now=True),
    )
    op.create_index("ix_webhook_deliveries_received_at", "webhook_deliveries", ["received_at"])


def downgrade() -> None:
    """Drop every mirror table in reverse dependency order."""
    for table in (
        "webhook_deliveries",
        "sync_runs",
        "notifications",
        "repository_subscriptions",
        "workflow_runs",
        "releases",
        "issue_review_comments",
        "issue_reviews",
        "issue_comments",
        "issue_subscriptions",
        "issue_requested_reviewers",
        "issue_labels",
        "issue_assignees",
        "issues",
        "issue_types",
        "milestones",
        "labels",
        "repository_collaborators",
        "repositories",
        "installations",
        "users",
    ):
        op.drop_table(table)
