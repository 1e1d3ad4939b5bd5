"""Column factories shared by the mirror tables."""

from datetime import UTC, datetime

import sqlalchemy as sa


def utc_now() -> datetime:
    return datetime.now(UTC)


def tz_column(nullable: bool = True, index: bool = False, server_now: bool = False) -> sa.Column:
    """Timezone-aware timestamp column; server_now adds a now() server default"""
    return sa.Column(
        sa.DateTime(timezone=True),
        nullable=nullable,
        index=index,
        server_default=sa.func.now() if server_now else None,
    )


def github_id_column(unique: bool = True) -> sa.Column:
    """Remote ids exceed 32 bits for newer entities"""
    return sa.Column(sa.BigInteger, nullable=False, unique=unique, index=True)
