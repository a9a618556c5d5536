"""Claimflow persistence.

PostgreSQL connectivity, tenant-scoped repositories with in-memory fallbacks,
the unit of work that spans them, and migration support.
"""

from claimflow.persistence.db import (
    DatabaseConfigError,
    begin_admin_conn,
    begin_app_conn,
    get_admin_engine,
    get_app_engine,
    get_database_url,
    is_postgres_configured,
    set_tenant_local,
)
from claimflow.persistence.unit_of_work import UnitOfWork, open_unit_of_work

__all__ = [
    "DatabaseConfigError",
    "UnitOfWork",
    "begin_admin_conn",
    "begin_app_conn",
    "get_admin_engine",
    "get_app_engine",
    "get_database_url",
    "is_postgres_configured",
    "open_unit_of_work",
    "set_tenant_local",
]
