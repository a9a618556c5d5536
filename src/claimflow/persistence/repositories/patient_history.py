"""Patient history repository for Postgres persistence.

Events are append-only. The only mutation is mark_processed, which sets
processed_at once and never again.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import text

from claimflow.models.patient_history import (
    EventType,
    PatientHistoryEvent,
    PatientHistoryQuery,
)
from claimflow.persistence.db import set_tenant_local
from claimflow.persistence.memory import get_in_memory_tables

if TYPE_CHECKING:
    from sqlalchemy import Connection

logger = logging.getLogger(__name__)

_EVENT_COLUMNS = """
    id, organization_id, patient_id, event_type, occurred_at, details,
    processed_at, created_at
"""


def _row_to_event(row: Any) -> PatientHistoryEvent:
    data = dict(row._mapping)
    data["id"] = str(data["id"])
    return PatientHistoryEvent.model_validate(data)


class PatientHistoryRepository:
    """Repository for patient history events, tenant-scoped via RLS."""

    def __init__(self, conn: Connection, organization_id: str) -> None:
        self._conn = conn
        self._organization_id = organization_id
        set_tenant_local(conn, organization_id)

    def create(
        self,
        *,
        patient_id: str,
        event_type: EventType,
        occurred_at: datetime,
        details: str | None = None,
    ) -> PatientHistoryEvent:
        """Insert an unprocessed event."""
        row = self._conn.execute(
            text(
                f"""
                INSERT INTO patient_histories (
                    id, organization_id, patient_id, event_type, occurred_at,
                    details, processed_at, created_at
                ) VALUES (
                    :id, :organization_id, :patient_id, :event_type, :occurred_at,
                    :details, NULL, :created_at
                )
                RETURNING {_EVENT_COLUMNS}
                """
            ),
            {
                "id": str(uuid.uuid4()),
                "organization_id": self._organization_id,
                "patient_id": patient_id,
                "event_type": event_type.value,
                "occurred_at": occurred_at,
                "details": details,
                "created_at": datetime.now(UTC),
            },
        ).fetchone()
        return _row_to_event(row)

    def find_by_id(self, event_id: str) -> PatientHistoryEvent | None:
        row = self._conn.execute(
            text(
                f"""
                SELECT {_EVENT_COLUMNS}
                FROM patient_histories
                WHERE id = :event_id AND organization_id = :organization_id
                """
            ),
            {"event_id": event_id, "organization_id": self._organization_id},
        ).fetchone()
        return _row_to_event(row) if row is not None else None

    def list_by_patient(
        self, patient_id: str, query: PatientHistoryQuery
    ) -> tuple[list[PatientHistoryEvent], int]:
        """One patient's events, most recent occurrence first."""
        conditions = ["organization_id = :organization_id", "patient_id = :patient_id"]
        params: dict[str, Any] = {
            "organization_id": self._organization_id,
            "patient_id": patient_id,
        }
        if query.event_type is not None:
            conditions.append("event_type = :event_type")
            params["event_type"] = query.event_type.value
        if query.from_date is not None:
            conditions.append("occurred_at >= :from_date")
            params["from_date"] = query.from_date
        if query.to_date is not None:
            conditions.append("occurred_at <= :to_date")
            params["to_date"] = query.to_date

        where = " AND ".join(conditions)
        total = self._conn.execute(
            text(f"SELECT COUNT(*) FROM patient_histories WHERE {where}"),
            params,
        ).scalar_one()
        rows = self._conn.execute(
            text(
                f"""
                SELECT {_EVENT_COLUMNS}
                FROM patient_histories
                WHERE {where}
                ORDER BY occurred_at DESC, id DESC
                LIMIT :limit OFFSET :offset
                """
            ),
            {**params, "limit": query.limit, "offset": query.offset},
        ).fetchall()
        return [_row_to_event(row) for row in rows], int(total)

    def mark_processed(self, event_id: str) -> bool:
        """Set processed_at if it is still unset.

        Returns:
            True if this call marked the event, False if it was already marked
            or does not exist.
        """
        result = self._conn.execute(
            text(
                """
                UPDATE patient_histories
                SET processed_at = :now
                WHERE id = :event_id
                  AND organization_id = :organization_id
                  AND processed_at IS NULL
                """
            ),
            {
                "now": datetime.now(UTC),
                "event_id": event_id,
                "organization_id": self._organization_id,
            },
        )
        return result.rowcount == 1


class InMemoryPatientHistoryRepository:
    """In-memory patient history repository for when Postgres is not configured."""

    def __init__(self, organization_id: str) -> None:
        self._organization_id = organization_id
        self._tables = get_in_memory_tables()

    def create(
        self,
        *,
        patient_id: str,
        event_type: EventType,
        occurred_at: datetime,
        details: str | None = None,
    ) -> PatientHistoryEvent:
        event = PatientHistoryEvent(
            id=str(uuid.uuid4()),
            organization_id=self._organization_id,
            patient_id=patient_id,
            event_type=event_type,
            occurred_at=occurred_at,
            details=details,
            processed_at=None,
            created_at=datetime.now(UTC),
        )
        with self._tables.lock:
            self._tables.events[event.id] = event
        return event

    def find_by_id(self, event_id: str) -> PatientHistoryEvent | None:
        with self._tables.lock:
            event = self._tables.events.get(event_id)
        if event is None or event.organization_id != self._organization_id:
            return None
        return event

    def list_by_patient(
        self, patient_id: str, query: PatientHistoryQuery
    ) -> tuple[list[PatientHistoryEvent], int]:
        with self._tables.lock:
            events = [
                e
                for e in self._tables.events.values()
                if e.organization_id == self._organization_id and e.patient_id == patient_id
            ]

        if query.event_type is not None:
            events = [e for e in events if e.event_type == query.event_type]
        if query.from_date is not None:
            events = [e for e in events if e.occurred_at >= query.from_date]
        if query.to_date is not None:
            events = [e for e in events if e.occurred_at <= query.to_date]

        events.sort(key=lambda e: (e.occurred_at, e.id), reverse=True)
        return events[query.offset : query.offset + query.limit], len(events)

    def mark_processed(self, event_id: str) -> bool:
        with self._tables.lock:
            event = self.find_by_id(event_id)
            if event is None or event.processed_at is not None:
                return False
            self._tables.events[event_id] = event.model_copy(
                update={"processed_at": datetime.now(UTC)}
            )
        return True


def get_patient_history_repository(
    conn: Connection | None, organization_id: str
) -> PatientHistoryRepository | InMemoryPatientHistoryRepository:
    """Postgres repository when a connection is given, in-memory otherwise."""
    if conn is not None:
        return PatientHistoryRepository(conn, organization_id)
    return InMemoryPatientHistoryRepository(organization_id)
