"""mir_database - Database models and session management for IssueMirror."""

from mir_database.base import Base
from mir_database.session import async_session_factory

__all__ = [
    "async_session_factory",
    "Base",
]
