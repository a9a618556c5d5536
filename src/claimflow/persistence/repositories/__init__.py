"""Tenant-scoped repositories with Postgres and in-memory implementations."""

from claimflow.persistence.repositories.claims import (
    ClaimsRepository,
    InMemoryClaimsRepository,
    get_claims_repository,
)
from claimflow.persistence.repositories.organizations import (
    InMemoryOrganizationsRepository,
    OrganizationsRepository,
    get_organizations_repository,
)
from claimflow.persistence.repositories.patient_history import (
    InMemoryPatientHistoryRepository,
    PatientHistoryRepository,
    get_patient_history_repository,
)

__all__ = [
    "ClaimsRepository",
    "InMemoryClaimsRepository",
    "InMemoryOrganizationsRepository",
    "InMemoryPatientHistoryRepository",
    "OrganizationsRepository",
    "PatientHistoryRepository",
    "get_claims_repository",
    "get_organizations_repository",
    "get_patient_history_repository",
]
