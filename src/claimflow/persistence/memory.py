"""In-memory tables used when PostgreSQL is not configured.

A single process-wide set of tables guarded by a re-entrant lock. A
transaction holds the lock for its whole duration and restores a snapshot of
every table if the block raises, so a unit of work is all-or-nothing here as
it is against Postgres. Rows are immutable pydantic models, so a shallow copy
of each table is a complete snapshot.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from claimflow.models.claim import Claim
from claimflow.models.organization import Organization
from claimflow.models.patient_history import PatientHistoryEvent


class InMemoryTables:
    """Process-local organizations, claims and patient history tables."""

    def __init__(self) -> None:
        self.organizations: dict[str, Organization] = {}
        self.claims: dict[str, Claim] = {}
        self.events: dict[str, PatientHistoryEvent] = {}
        self.lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator[InMemoryTables]:
        """Serialize access and roll every table back if the block raises."""
        with self.lock:
            snapshot = (dict(self.organizations), dict(self.claims), dict(self.events))
            try:
                yield self
            except BaseException:
                self.organizations, self.claims, self.events = (
                    snapshot[0],
                    snapshot[1],
                    snapshot[2],
                )
                raise

    def clear(self) -> None:
        with self.lock:
            self.organizations.clear()
            self.claims.clear()
            self.events.clear()


_tables = InMemoryTables()


def get_in_memory_tables() -> InMemoryTables:
    return _tables


def clear_in_memory_tables() -> None:
    """Empty every in-memory table. For testing only."""
    _tables.clear()
