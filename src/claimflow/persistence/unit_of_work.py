"""Unit of work: one transaction spanning the claim and event repositories.

Against Postgres a unit of work is one application connection inside one
transaction, committed when the block exits normally and rolled back when it
raises. Without Postgres it is a snapshot transaction over the in-memory
tables with the same all-or-nothing behavior.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from claimflow.persistence.db import begin_app_conn, is_postgres_configured
from claimflow.persistence.memory import get_in_memory_tables
from claimflow.persistence.repositories.claims import get_claims_repository
from claimflow.persistence.repositories.patient_history import (
    get_patient_history_repository,
)

if TYPE_CHECKING:
    from sqlalchemy import Connection

logger = logging.getLogger(__name__)


class UnitOfWork:
    """Repositories for one organization bound to one transaction."""

    def __init__(self, organization_id: str, conn: Connection | None) -> None:
        self.organization_id = organization_id
        self.conn = conn
        self.claims = get_claims_repository(conn, organization_id)
        self.patient_history = get_patient_history_repository(conn, organization_id)


@contextmanager
def open_unit_of_work(organization_id: str) -> Iterator[UnitOfWork]:
    """Open a transaction scoped to organization_id.

    Everything written through the yielded UnitOfWork is committed together
    when the block exits, or not at all if it raises.
    """
    if is_postgres_configured():
        with begin_app_conn() as conn:
            yield UnitOfWork(organization_id, conn)
        return

    with get_in_memory_tables().transaction():
        yield UnitOfWork(organization_id, None)
