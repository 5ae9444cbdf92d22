"""Alembic environment for the task engine store.

The SQLite URL is injected by ``task_engine.storage.alembic_runner``; the
``TASK_ENGINE_DATABASE_URL`` variable overrides it for manual runs.
"""

from __future__ import annotations

import os

from sqlalchemy import engine_from_config, pool
from sqlmodel import SQLModel

from alembic import context
from task_engine.storage import sqlmodel_models  # noqa: F401

config = context.config

database_url = os.environ.get("TASK_ENGINE_DATABASE_URL")
if database_url:
    config.set_main_option("sqlalchemy.url", database_url)

target_metadata = SQLModel.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (SQL script output only)."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode (live database connection)."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
