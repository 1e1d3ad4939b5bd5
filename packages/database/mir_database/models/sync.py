from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .common import tz_column, utc_now


class SyncRun(SQLModel, table=True):
    """
    Durable checkpoint for one repository sync.
    completed_steps and step_results let an interrupted run resume at the
    first step that has not finished.
    """

    __tablename__ = "sync_runs"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner: str
    repo: str
    requested_by_user_id: Optional[int] = Field(default=None, foreign_key="users.id", ondelete="SET NULL")
    repository_id: Optional[int] = Field(default=None, foreign_key="repositories.id", ondelete="CASCADE")

    status: str = Field(default="pending", index=True)
    current_step: Optional[str] = Field(default=None)
    completed_steps: list = Field(default_factory=list, sa_column=sa.Column(sa.JSON, nullable=False))
    step_results: dict = Field(default_factory=dict, sa_column=sa.Column(sa.JSON, nullable=False))
    error: Optional[str] = Field(default=None, sa_column=sa.Column(sa.Text))
    attempts: int = Field(default=0)

    started_at: datetime = Field(
        default_factory=utc_now,
        sa_column=tz_column(nullable=False, server_now=True),
    )
    heartbeat_at: Optional[datetime] = Field(default=None, sa_column=tz_column(index=True))
    finished_at: Optional[datetime] = Field(default=None, sa_column=tz_column())


class WebhookDelivery(SQLModel, table=True):
    __tablename__ = "webhook_deliveries"

    id: Optional[int] = Field(default=None, primary_key=True)
    delivery_id: str = Field(unique=True, index=True, max_length=64)
    event: str
    action: Optional[str] = Field(default=None)
    received_at: datetime = Field(
        default_factory=utc_now,
        sa_column=tz_column(nullable=False, index=True, server_now=True),
    )
