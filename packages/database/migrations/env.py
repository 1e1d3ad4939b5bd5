import asyncio
import os
from logging.config import fileConfig

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config
from sqlmodel import SQLModel

import mir_database.models  # noqa: F401

project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../../.."))
load_dotenv(os.path.join(project_root, ".env.local"))
load_dotenv(os.path.join(project_root, ".env"))


config = context.config

# Override sqlalchemy.url with DIRECT_DATABASE_URL for migrations
# Falls back to DATABASE_URL if DIRECT_DATABASE_URL is not set
database_url = os.getenv("DIRECT_DATABASE_URL") or os.getenv("DATABASE_URL", "")
if database_url.startswith("postgresql://"):
    database_url = database_url.replace("postgresql://", "postgresql+asyncpg://")
# Escape percent signs to prevent parsing issues
config.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata


def _compare_type(
    context, inspected_column, metadata_column, inspected_type, metadata_type
):
    """Custom type comparator that ignores equivalent PostgreSQL types.

    SQLModel's AutoString and SQLAlchemy's Text/String both map to TEXT or
    VARCHAR. Without this, Alembic reports a perpetual cosmetic diff for every
    string column declared as ``str`` but reflected as TEXT.
    """
    import sqlalchemy.types as satypes
    from sqlmodel.sql.sqltypes import AutoString

    is_inspected_text = isinstance(inspected_type, (satypes.Text, satypes.String))
    is_metadata_auto = isinstance(metadata_type, AutoString)
    if is_inspected_text and is_metadata_auto:
        return False

    is_inspected_auto = isinstance(inspected_type, AutoString)
    is_metadata_text = isinstance(metadata_type, (satypes.Text, satypes.String))
    if is_inspected_auto and is_metadata_text:
        return False

    return None


def run_migrations_offline() -> None:
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=_compare_type,
        render_as_batch=True,
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    connect_args = {}
    if database_url.startswith("postgresql+asyncpg://"):
        # Disable prepared statement caching for PgBouncer compatibility
        connect_args = {
            "prepared_statement_cache_size": 0,
            "statement_cache_size": 0,
        }

    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
        connect_args=connect_args,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


def run_migrations_online() -> None:
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
