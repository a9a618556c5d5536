"""Patient history routes for the Claimflow API.

Provides:
- POST /v1/patient-history               (record an event, enqueue reconciliation)
- GET  /v1/patient-history/{patient_id}  (one patient's events, newest first)
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from claimflow.api.auth import RequireTenantContext
from claimflow.models.patient_history import (
    CreatePatientEventInput,
    PaginatedPatientHistory,
    PatientHistoryEvent,
    PatientHistoryQuery,
)
from claimflow.services.patient_history import PatientHistoryService
from claimflow.tenancy import tenant_scope

router = APIRouter(prefix="/v1", tags=["PatientHistory"])


def _service(request: Request) -> PatientHistoryService:
    return request.app.state.patient_history_service


@router.post("/patient-history", response_model=PatientHistoryEvent, status_code=201)
def create_patient_event(
    body: CreatePatientEventInput, request: Request, tenant_ctx: RequireTenantContext
) -> PatientHistoryEvent:
    with tenant_scope(tenant_ctx):
        return _service(request).create_event(body)


@router.get("/patient-history/{patient_id}", response_model=PaginatedPatientHistory)
def get_patient_history(
    patient_id: str,
    request: Request,
    tenant_ctx: RequireTenantContext,
    event_type: str | None = None,
    from_date: str | None = None,
    to_date: str | None = None,
    limit: str | None = None,
    offset: str | None = None,
) -> PaginatedPatientHistory:
    raw: dict[str, Any] = {
        "event_type": event_type,
        "from_date": from_date,
        "to_date": to_date,
        "limit": limit,
        "offset": offset,
    }
    query = PatientHistoryQuery.model_validate({k: v for k, v in raw.items() if v is not None})

    with tenant_scope(tenant_ctx):
        return _service(request).get_patient_history(patient_id, query)
