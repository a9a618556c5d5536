"""Claims repository for Postgres persistence.

Provides tenant-scoped reads and writes for claims. Every statement carries an
explicit organization_id predicate in addition to the RLS policy, so a missing
tenant setting can never widen a query.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import text

from claimflow.models.claim import Claim, ClaimStatus, ListClaimsQuery
from claimflow.persistence.db import set_tenant_local
from claimflow.persistence.memory import get_in_memory_tables

if TYPE_CHECKING:
    from sqlalchemy import Connection

logger = logging.getLogger(__name__)

_CLAIM_COLUMNS = """
    id, organization_id, patient_id, provider_id, diagnosis_code, amount,
    status, assigned_processor_id, created_at, updated_at
"""

_SORT_COLUMNS = {
    "created_at": "created_at",
    "updated_at": "updated_at",
    "amount": "amount",
    "status": "status",
}

_UPDATABLE_COLUMNS = frozenset({"status", "assigned_processor_id", "diagnosis_code", "amount"})


def _row_to_claim(row: Any) -> Claim:
    data = dict(row._mapping)
    data["id"] = str(data["id"])
    return Claim.model_validate(data)


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, ClaimStatus) else value


class ClaimsRepository:
    """Repository for claim persistence operations.

    All operations are tenant-scoped via RLS and an explicit organization_id
    predicate.
    """

    def __init__(self, conn: Connection, organization_id: str) -> None:
        """Initialize repository with connection and tenant context."""
        self._conn = conn
        self._organization_id = organization_id
        set_tenant_local(conn, organization_id)

    def create(
        self,
        *,
        patient_id: str,
        provider_id: str,
        diagnosis_code: str,
        amount: Decimal,
        assigned_processor_id: str | None = None,
    ) -> Claim:
        """Insert a new claim in status submitted."""
        now = datetime.now(UTC)
        row = self._conn.execute(
            text(
                f"""
                INSERT INTO claims (
                    id, organization_id, patient_id, provider_id, diagnosis_code,
                    amount, status, assigned_processor_id, created_at, updated_at
                ) VALUES (
                    :id, :organization_id, :patient_id, :provider_id, :diagnosis_code,
                    :amount, :status, :assigned_processor_id, :now, :now
                )
                RETURNING {_CLAIM_COLUMNS}
                """
            ),
            {
                "id": str(uuid.uuid4()),
                "organization_id": self._organization_id,
                "patient_id": patient_id,
                "provider_id": provider_id,
                "diagnosis_code": diagnosis_code,
                "amount": amount,
                "status": ClaimStatus.SUBMITTED.value,
                "assigned_processor_id": assigned_processor_id,
                "now": now,
            },
        ).fetchone()
        return _row_to_claim(row)

    def find_by_id(self, claim_id: str, *, for_update: bool = False) -> Claim | None:
        """Get a claim by ID, optionally locking the row until commit."""
        lock = " FOR UPDATE" if for_update else ""
        row = self._conn.execute(
            text(
                f"""
                SELECT {_CLAIM_COLUMNS}
                FROM claims
                WHERE id = :claim_id AND organization_id = :organization_id{lock}
                """
            ),
            {"claim_id": claim_id, "organization_id": self._organization_id},
        ).fetchone()
        return _row_to_claim(row) if row is not None else None

    def find_many(self, claim_ids: Sequence[str]) -> list[Claim]:
        """Claims of this organization whose id is in claim_ids."""
        if not claim_ids:
            return []
        rows = self._conn.execute(
            text(
                f"""
                SELECT {_CLAIM_COLUMNS}
                FROM claims
                WHERE id = ANY(:claim_ids) AND organization_id = :organization_id
                """
            ),
            {"claim_ids": list(claim_ids), "organization_id": self._organization_id},
        ).fetchall()
        return [_row_to_claim(row) for row in rows]

    def list(self, query: ListClaimsQuery) -> tuple[list[Claim], int]:
        """One page of claims matching query, plus the total match count."""
        conditions = ["organization_id = :organization_id"]
        params: dict[str, Any] = {"organization_id": self._organization_id}

        if query.status is not None:
            conditions.append("status = :status")
            params["status"] = query.status.value
        if query.patient_id is not None:
            conditions.append("patient_id = :patient_id")
            params["patient_id"] = query.patient_id
        if query.provider_id is not None:
            conditions.append("provider_id = :provider_id")
            params["provider_id"] = query.provider_id
        if query.assigned_processor_id is not None:
            conditions.append("assigned_processor_id = :assigned_processor_id")
            params["assigned_processor_id"] = query.assigned_processor_id
        if query.from_date is not None:
            conditions.append("created_at >= :from_date")
            params["from_date"] = query.from_date
        if query.to_date is not None:
            conditions.append("created_at <= :to_date")
            params["to_date"] = query.to_date
        if query.min_amount is not None:
            conditions.append("amount >= :min_amount")
            params["min_amount"] = query.min_amount
        if query.max_amount is not None:
            conditions.append("amount <= :max_amount")
            params["max_amount"] = query.max_amount

        where = " AND ".join(conditions)
        sort_column = _SORT_COLUMNS[query.sort_by]
        direction = "ASC" if query.sort_order == "asc" else "DESC"

        total = self._conn.execute(
            text(f"SELECT COUNT(*) FROM claims WHERE {where}"),
            params,
        ).scalar_one()

        rows = self._conn.execute(
            text(
                f"""
                SELECT {_CLAIM_COLUMNS}
                FROM claims
                WHERE {where}
                ORDER BY {sort_column} {direction}, id {direction}
                LIMIT :limit OFFSET :offset
                """
            ),
            {**params, "limit": query.limit, "offset": query.offset},
        ).fetchall()

        return [_row_to_claim(row) for row in rows], int(total)

    def update(self, claim_id: str, changes: dict[str, Any]) -> Claim | None:
        """Apply changes to one claim and bump updated_at."""
        unknown = set(changes) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update claim columns: {sorted(unknown)}")

        assignments = [f"{column} = :{column}" for column in sorted(changes)]
        assignments.append("updated_at = :now")
        params = {column: _column_value(value) for column, value in changes.items()}
        params.update(
            {
                "claim_id": claim_id,
                "organization_id": self._organization_id,
                "now": datetime.now(UTC),
            }
        )

        row = self._conn.execute(
            text(
                f"""
                UPDATE claims
                SET {", ".join(assignments)}
                WHERE id = :claim_id AND organization_id = :organization_id
                RETURNING {_CLAIM_COLUMNS}
                """
            ),
            params,
        ).fetchone()
        return _row_to_claim(row) if row is not None else None

    def bulk_update_status(self, claim_ids: Sequence[str], status: ClaimStatus) -> list[Claim]:
        """Set status on every listed claim of this organization."""
        if not claim_ids:
            return []
        rows = self._conn.execute(
            text(
                f"""
                UPDATE claims
                SET status = :status, updated_at = :now
                WHERE id = ANY(:claim_ids) AND organization_id = :organization_id
                RETURNING {_CLAIM_COLUMNS}
                """
            ),
            {
                "status": status.value,
                "now": datetime.now(UTC),
                "claim_ids": list(claim_ids),
                "organization_id": self._organization_id,
            },
        ).fetchall()
        return [_row_to_claim(row) for row in rows]

    def update_status_by_patient(
        self,
        patient_id: str,
        current_status: ClaimStatus,
        new_status: ClaimStatus,
    ) -> list[Claim]:
        """Move every claim of a patient from current_status to new_status.

        The status predicate is part of the UPDATE itself, so a claim that
        changed status concurrently is left alone.
        """
        rows = self._conn.execute(
            text(
                f"""
                UPDATE claims
                SET status = :new_status, updated_at = :now
                WHERE organization_id = :organization_id
                  AND patient_id = :patient_id
                  AND status = :current_status
                RETURNING {_CLAIM_COLUMNS}
                """
            ),
            {
                "new_status": new_status.value,
                "now": datetime.now(UTC),
                "organization_id": self._organization_id,
                "patient_id": patient_id,
                "current_status": current_status.value,
            },
        ).fetchall()
        return [_row_to_claim(row) for row in rows]


def _matches(claim: Claim, query: ListClaimsQuery) -> bool:
    if query.status is not None and claim.status != query.status:
        return False
    if query.patient_id is not None and claim.patient_id != query.patient_id:
        return False
    if query.provider_id is not None and claim.provider_id != query.provider_id:
        return False
    if (
        query.assigned_processor_id is not None
        and claim.assigned_processor_id != query.assigned_processor_id
    ):
        return False
    if query.from_date is not None and claim.created_at < query.from_date:
        return False
    if query.to_date is not None and claim.created_at > query.to_date:
        return False
    if query.min_amount is not None and claim.amount < query.min_amount:
        return False
    return not (query.max_amount is not None and claim.amount > query.max_amount)


def _sort_key(claim: Claim, sort_by: str) -> Any:
    value = getattr(claim, sort_by)
    return value.value if isinstance(value, ClaimStatus) else value


class InMemoryClaimsRepository:
    """In-memory claims repository for when Postgres is not configured."""

    def __init__(self, organization_id: str) -> None:
        self._organization_id = organization_id
        self._tables = get_in_memory_tables()

    def create(
        self,
        *,
        patient_id: str,
        provider_id: str,
        diagnosis_code: str,
        amount: Decimal,
        assigned_processor_id: str | None = None,
    ) -> Claim:
        now = datetime.now(UTC)
        claim = Claim(
            id=str(uuid.uuid4()),
            organization_id=self._organization_id,
            patient_id=patient_id,
            provider_id=provider_id,
            diagnosis_code=diagnosis_code,
            amount=amount,
            status=ClaimStatus.SUBMITTED,
            assigned_processor_id=assigned_processor_id,
            created_at=now,
            updated_at=now,
        )
        with self._tables.lock:
            self._tables.claims[claim.id] = claim
        return claim

    def find_by_id(self, claim_id: str, *, for_update: bool = False) -> Claim | None:
        with self._tables.lock:
            claim = self._tables.claims.get(claim_id)
        if claim is None or claim.organization_id != self._organization_id:
            return None
        return claim

    def find_many(self, claim_ids: Sequence[str]) -> list[Claim]:
        wanted = set(claim_ids)
        with self._tables.lock:
            return [
                c
                for c in self._tables.claims.values()
                if c.id in wanted and c.organization_id == self._organization_id
            ]

    def list(self, query: ListClaimsQuery) -> tuple[list[Claim], int]:
        with self._tables.lock:
            matching = [
                c
                for c in self._tables.claims.values()
                if c.organization_id == self._organization_id and _matches(c, query)
            ]

        reverse = query.sort_order == "desc"
        matching.sort(key=lambda c: (_sort_key(c, query.sort_by), c.id), reverse=reverse)
        page = matching[query.offset : query.offset + query.limit]
        return page, len(matching)

    def update(self, claim_id: str, changes: dict[str, Any]) -> Claim | None:
        unknown = set(changes) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update claim columns: {sorted(unknown)}")

        with self._tables.lock:
            existing = self.find_by_id(claim_id)
            if existing is None:
                return None
            updated = Claim.model_validate(
                {**existing.model_dump(), **changes, "updated_at": datetime.now(UTC)}
            )
            self._tables.claims[claim_id] = updated
        return updated

    def bulk_update_status(self, claim_ids: Sequence[str], status: ClaimStatus) -> list[Claim]:
        now = datetime.now(UTC)
        updated: list[Claim] = []
        with self._tables.lock:
            for claim in self.find_many(claim_ids):
                new_claim = claim.model_copy(update={"status": status, "updated_at": now})
                self._tables.claims[claim.id] = new_claim
                updated.append(new_claim)
        return updated

    def update_status_by_patient(
        self,
        patient_id: str,
        current_status: ClaimStatus,
        new_status: ClaimStatus,
    ) -> list[Claim]:
        now = datetime.now(UTC)
        updated: list[Claim] = []
        with self._tables.lock:
            for claim in list(self._tables.claims.values()):
                if (
                    claim.organization_id == self._organization_id
                    and claim.patient_id == patient_id
                    and claim.status == current_status
                ):
                    new_claim = claim.model_copy(update={"status": new_status, "updated_at": now})
                    self._tables.claims[claim.id] = new_claim
                    updated.append(new_claim)
        return updated


def get_claims_repository(
    conn: Connection | None, organization_id: str
) -> ClaimsRepository | InMemoryClaimsRepository:
    """Postgres repository when a connection is given, in-memory otherwise."""
    if conn is not None:
        return ClaimsRepository(conn, organization_id)
    return InMemoryClaimsRepository(organization_id)
