"""Migrations for the seat inventory and booking tables.

The URL always comes from app settings, never from alembic.ini, so migrations and
the running service point at the same database.
"""
import asyncio
import os
import sys
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine

from alembic import context

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from app.config import settings  # noqa: E402
from app.models import Base  # noqa: E402

if context.config.config_file_name:
    fileConfig(context.config.config_file_name, disable_existing_loggers=False)

MIGRATION_OPTS = {"target_metadata": Base.metadata, "compare_type": True}


def _migrate(connection=None):
    if connection is None:
        context.configure(url=str(settings.DATABASE_URL), literal_binds=True, **MIGRATION_OPTS)
    else:
        context.configure(connection=connection, **MIGRATION_OPTS)
    with context.begin_transaction():
        context.run_migrations()


async def _migrate_online():
    engine = create_async_engine(str(settings.DATABASE_URL), poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    _migrate()
else:
    asyncio.run(_migrate_online())
