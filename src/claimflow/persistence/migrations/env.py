"""Alembic environment for Claimflow migrations.

Uses CLAIMFLOW_DATABASE_ADMIN_URL, or the connection handed over in
config.attributes["connection"] by claimflow.persistence.migrate.
"""

from __future__ import annotations

import logging

from alembic import context

from claimflow.persistence.db import get_admin_engine, get_database_url

logger = logging.getLogger(__name__)

target_metadata = None


def run_migrations_offline() -> None:
    """Emit SQL to stdout without a live connection."""
    context.configure(
        url=get_database_url(admin=True),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run against the handed-over connection, or a fresh admin connection."""
    connection = context.config.attributes.get("connection")
    if connection is not None:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()
        return

    with get_admin_engine().connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
