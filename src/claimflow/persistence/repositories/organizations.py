"""Organizations repository.

Organizations are the tenant root and are not themselves tenant-scoped, so
the Postgres repository does not set the RLS tenant setting.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import text

from claimflow.models.organization import Organization
from claimflow.persistence.memory import get_in_memory_tables

if TYPE_CHECKING:
    from sqlalchemy import Connection


class OrganizationsRepository:
    def __init__(self, conn: Connection) -> None:
        self._conn = conn

    def create(self, name: str, organization_id: str | None = None) -> Organization:
        row = self._conn.execute(
            text(
                """
                INSERT INTO organizations (id, name, created_at)
                VALUES (:id, :name, :created_at)
                RETURNING id, name, created_at
                """
            ),
            {
                "id": organization_id or str(uuid.uuid4()),
                "name": name,
                "created_at": datetime.now(UTC),
            },
        ).fetchone()
        return Organization(id=str(row.id), name=row.name, created_at=row.created_at)

    def get(self, organization_id: str) -> Organization | None:
        row = self._conn.execute(
            text("SELECT id, name, created_at FROM organizations WHERE id = :id"),
            {"id": organization_id},
        ).fetchone()
        if row is None:
            return None
        return Organization(id=str(row.id), name=row.name, created_at=row.created_at)


class InMemoryOrganizationsRepository:
    def __init__(self) -> None:
        self._tables = get_in_memory_tables()

    def create(self, name: str, organization_id: str | None = None) -> Organization:
        org = Organization(
            id=organization_id or str(uuid.uuid4()),
            name=name,
            created_at=datetime.now(UTC),
        )
        with self._tables.lock:
            self._tables.organizations[org.id] = org
        return org

    def get(self, organization_id: str) -> Organization | None:
        with self._tables.lock:
            return self._tables.organizations.get(organization_id)


def get_organizations_repository(
    conn: Connection | None,
) -> OrganizationsRepository | InMemoryOrganizationsRepository:
    if conn is not None:
        return OrganizationsRepository(conn)
    return InMemoryOrganizationsRepository()
