"""PostgreSQL connectivity and connection helpers for Claimflow.

Provides engine creation, transactional connections, and tenant scoping via
row-level security.

Environment Variables:
    CLAIMFLOW_DATABASE_URL: Application role connection string (non-superuser)
    CLAIMFLOW_DATABASE_ADMIN_URL: Admin connection string (migrations/tests only)

When CLAIMFLOW_DATABASE_URL is not set, repositories fall back to the
in-memory tables in claimflow.persistence.memory.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Generator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

if TYPE_CHECKING:
    from sqlalchemy import Connection, Engine

logger = logging.getLogger(__name__)

DATABASE_URL_ENV = "CLAIMFLOW_DATABASE_URL"
DATABASE_ADMIN_URL_ENV = "CLAIMFLOW_DATABASE_ADMIN_URL"

TENANT_SETTING = "app.organization_id"

_app_engine: Engine | None = None
_admin_engine: Engine | None = None


class DatabaseConfigError(Exception):
    """Raised when database configuration is missing or invalid."""

    pass


def is_postgres_configured() -> bool:
    """True if CLAIMFLOW_DATABASE_URL is set."""
    return bool(os.environ.get(DATABASE_URL_ENV))


def _normalize_url(url: str) -> str:
    """SQLAlchemy no longer accepts the postgres:// scheme alias."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def get_database_url(admin: bool = False) -> str:
    """Get the database URL from environment.

    Raises:
        DatabaseConfigError: If the required environment variable is not set.
    """
    env_var = DATABASE_ADMIN_URL_ENV if admin else DATABASE_URL_ENV
    url = os.environ.get(env_var)

    if not url:
        raise DatabaseConfigError(
            f"Database URL not configured. Set {env_var} environment variable."
        )

    return _normalize_url(url)


def get_app_engine() -> Engine:
    """Get or create the application database engine."""
    global _app_engine

    if _app_engine is None:
        _app_engine = create_engine(
            get_database_url(admin=False),
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )
        logger.info("Created application database engine")

    return _app_engine


def get_admin_engine() -> Engine:
    """Get or create the admin database engine (migrations, tests)."""
    global _admin_engine

    if _admin_engine is None:
        _admin_engine = create_engine(
            get_database_url(admin=True),
            pool_size=2,
            max_overflow=5,
            pool_pre_ping=True,
        )
        logger.info("Created admin database engine")

    return _admin_engine


@contextmanager
def begin_app_conn() -> Generator[Connection, None, None]:
    """Application connection inside a transaction.

    Commits when the block exits normally, rolls back when it raises.
    """
    engine = get_app_engine()
    with engine.connect() as conn, conn.begin():
        yield conn


@contextmanager
def begin_admin_conn() -> Generator[Connection, None, None]:
    """Admin connection inside a transaction. Bypasses RLS; migrations and tests only."""
    engine = get_admin_engine()
    with engine.connect() as conn, conn.begin():
        yield conn


_ORG_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def set_tenant_local(conn: Connection, organization_id: str) -> None:
    """Scope the current transaction to one organization for RLS policies.

    Raises:
        DatabaseConfigError: If organization_id is not a plain identifier.
        SQLAlchemyError: If the statement fails.
    """
    if not _ORG_ID_PATTERN.match(organization_id):
        raise DatabaseConfigError(f"Invalid organization_id format: {organization_id!r}")

    try:
        conn.execute(
            text("SELECT set_config(:setting, :organization_id, true)"),
            {"setting": TENANT_SETTING, "organization_id": organization_id},
        )
    except SQLAlchemyError as e:
        logger.error("Failed to set tenant context: %s", e)
        raise


def reset_engines() -> None:
    """Dispose and forget cached engines. Used by tests."""
    global _app_engine, _admin_engine
    if _app_engine is not None:
        _app_engine.dispose()
        _app_engine = None
    if _admin_engine is not None:
        _admin_engine.dispose()
        _admin_engine = None
