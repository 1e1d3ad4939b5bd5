from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .common import github_id_column, tz_column, utc_now


class User(SQLModel, table=True):
    """
    Mirrored remote account. registered=False marks a shadow user created
    from a sighting (author, assignee, collaborator) who never signed in.
    """

    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    login: str = Field(index=True)
    name: Optional[str] = Field(default=None)
    email: Optional[str] = Field(default=None)
    avatar_url: Optional[str] = Field(default=None)
    registered: bool = Field(default=False)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=tz_column(nullable=False, server_now=True),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=tz_column(nullable=False, server_now=True),
    )


class Installation(SQLModel, table=True):
    __tablename__ = "installations"

    id: Optional[int] = Field(default=None, primary_key=True)
    github_id: int = Field(sa_column=github_id_column())
    account_id: int = Field(sa_column=sa.Column(sa.BigInteger, nullable=False))
    account_login: str
    account_type: str = Field(default="User")
    avatar_url: Optional[str] = Field(default=None)
    suspended: bool = Field(default=False)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=tz_column(nullable=False, server_now=True),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=tz_column(nullable=False, server_now=True),
    )
