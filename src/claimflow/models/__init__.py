"""Claimflow domain models."""

from claimflow.models.claim import (
    BulkStatusUpdateInput,
    Claim,
    ClaimStatus,
    CreateClaimInput,
    ListClaimsQuery,
    PaginatedClaims,
    Pagination,
    UpdateClaimInput,
)
from claimflow.models.organization import Organization
from claimflow.models.patient_history import (
    CreatePatientEventInput,
    EventType,
    PaginatedPatientHistory,
    PatientHistoryEvent,
    PatientHistoryQuery,
)

__all__ = [
    "BulkStatusUpdateInput",
    "Claim",
    "ClaimStatus",
    "CreateClaimInput",
    "CreatePatientEventInput",
    "EventType",
    "ListClaimsQuery",
    "Organization",
    "PaginatedClaims",
    "PaginatedPatientHistory",
    "Pagination",
    "PatientHistoryEvent",
    "PatientHistoryQuery",
    "UpdateClaimInput",
]
