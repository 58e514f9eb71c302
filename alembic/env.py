"""Alembic environment for the Tollgate schema.

The target URL is resolved in this order:
1. ``alembic -x database_url=...`` on the command line,
2. TOLLGATE_DATABASE_URL via tollgate.config.settings.

Online runs go through the async driver (asyncpg, or aiosqlite in local
setups).  SQLite gets batch mode so ALTERs are rendered as table copies.
"""

import asyncio
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from alembic import context
from tollgate.config import settings
from tollgate.db.models import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url() -> str:
    return context.get_x_argument(as_dictionary=True).get("database_url", settings.database_url)


def _configure(**kwargs) -> None:
    context.configure(target_metadata=target_metadata, compare_type=True, **kwargs)


def _migrate(connection: Connection) -> None:
    _configure(connection=connection, render_as_batch=connection.dialect.name == "sqlite")
    with context.begin_transaction():
        context.run_migrations()


async def _migrate_online(url: str) -> None:
    # One short-lived connection per invocation.
    engine = create_async_engine(url, poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    # Render SQL only (``alembic upgrade head --sql``).
    _configure(url=_database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()
else:
    asyncio.run(_migrate_online(_database_url()))
