"""Claims routes for the Claimflow API.

Provides:
- POST  /v1/claims              (create)
- GET   /v1/claims              (list, role-scoped)
- GET   /v1/claims/{claim_id}   (detail)
- PATCH /v1/claims/{claim_id}   (partial update)
- POST  /v1/claims/bulk-status  (admin bulk status update)

Handlers are thin: they bind the caller's tenant scope and delegate to
ClaimService, which raises ClaimflowError subclasses rendered by the global
exception handlers.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from claimflow.api.auth import RequireTenantContext
from claimflow.models.claim import (
    BulkStatusUpdateInput,
    Claim,
    CreateClaimInput,
    ListClaimsQuery,
    PaginatedClaims,
    UpdateClaimInput,
)
from claimflow.services.claims import ClaimService
from claimflow.tenancy import tenant_scope

router = APIRouter(prefix="/v1", tags=["Claims"])


def _service(request: Request) -> ClaimService:
    return request.app.state.claim_service


@router.post("/claims", response_model=Claim, status_code=201)
def create_claim(
    body: CreateClaimInput, request: Request, tenant_ctx: RequireTenantContext
) -> Claim:
    with tenant_scope(tenant_ctx):
        return _service(request).create(body)


@router.get("/claims", response_model=PaginatedClaims)
def list_claims(
    request: Request,
    tenant_ctx: RequireTenantContext,
    status: str | None = None,
    patient_id: str | None = None,
    provider_id: str | None = None,
    assigned_processor_id: str | None = None,
    from_date: str | None = None,
    to_date: str | None = None,
    min_amount: str | None = None,
    max_amount: str | None = None,
    limit: str | None = None,
    offset: str | None = None,
    sort_by: str | None = None,
    sort_order: str | None = None,
) -> PaginatedClaims:
    """List claims visible to the caller.

    Query parameters are validated as a whole by ListClaimsQuery, so range
    and enum errors come back as one 400 with per-field details.
    """
    raw: dict[str, Any] = {
        "status": status,
        "patient_id": patient_id,
        "provider_id": provider_id,
        "assigned_processor_id": assigned_processor_id,
        "from_date": from_date,
        "to_date": to_date,
        "min_amount": min_amount,
        "max_amount": max_amount,
        "limit": limit,
        "offset": offset,
        "sort_by": sort_by,
        "sort_order": sort_order,
    }
    query = ListClaimsQuery.model_validate({k: v for k, v in raw.items() if v is not None})

    with tenant_scope(tenant_ctx):
        return _service(request).list(query)


@router.post("/claims/bulk-status", response_model=list[Claim])
def bulk_update_status(
    body: BulkStatusUpdateInput, request: Request, tenant_ctx: RequireTenantContext
) -> list[Claim]:
    with tenant_scope(tenant_ctx):
        return _service(request).bulk_update_status(body)


@router.get("/claims/{claim_id}", response_model=Claim)
def get_claim(claim_id: str, request: Request, tenant_ctx: RequireTenantContext) -> Claim:
    with tenant_scope(tenant_ctx):
        return _service(request).get(claim_id)


@router.patch("/claims/{claim_id}", response_model=Claim)
def update_claim(
    claim_id: str,
    body: UpdateClaimInput,
    request: Request,
    tenant_ctx: RequireTenantContext,
) -> Claim:
    with tenant_scope(tenant_ctx):
        return _service(request).update(claim_id, body)
