"""
Lazily built async engine and session factory for the mirror database.
DATABASE_URL is read from the environment (or .env files at the repo root)
on first use, so importing models never needs a reachable database.
"""
import os
import threading

from dotenv import load_dotenv
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../../.."))

_init_lock = threading.RLock()
_env_loaded = False
_engine = None
_session_factory = None


def _load_env_once() -> None:
    global _env_loaded
    if _env_loaded:
        return

    with _init_lock:
        if _env_loaded:
            return
        try:
            load_dotenv(os.path.join(project_root, ".env.local"))
        except PermissionError:
            pass
        load_dotenv(os.path.join(project_root, ".env"))
        _env_loaded = True


def _database_url() -> str:
    _load_env_once()
    database_url = os.getenv("DATABASE_URL", "")
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://")
    return database_url


def _connect_args(database_url: str) -> dict:
    # PgBouncer in transaction mode cannot reuse prepared statements
    if database_url.startswith("postgresql+asyncpg://"):
        return {
            "prepared_statement_cache_size": 0,
            "statement_cache_size": 0,
        }
    return {}


def get_engine():
    global _engine
    if _engine is not None:
        return _engine

    with _init_lock:
        if _engine is None:
            database_url = _database_url()
            _engine = create_async_engine(
                database_url,
                echo=False,
                pool_pre_ping=True,
                connect_args=_connect_args(database_url),
            )
    return _engine


def get_async_session_factory():
    global _session_factory
    if _session_factory is not None:
        return _session_factory

    with _init_lock:
        if _session_factory is None:
            _session_factory = sessionmaker(
                get_engine(),
                class_=AsyncSession,
                expire_on_commit=False,
            )
    return _session_factory


class _LazySessionFactory:
    """Callable stand-in so `async with async_session_factory() as db` works at import time."""

    def __call__(self, *args, **kwargs):
        return get_async_session_factory()(*args, **kwargs)


async_session_factory = _LazySessionFactory()


def reset_session_state_for_testing() -> None:
    global _env_loaded, _engine, _session_factory
    _env_loaded = False
    _engine = None
    _session_factory = None
