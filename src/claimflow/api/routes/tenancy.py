"""Tenancy routes: GET /v1/tenants/me."""

from fastapi import APIRouter

from claimflow.api.auth import RequireTenantContext
from claimflow.tenancy import TenantContext

router = APIRouter(prefix="/v1", tags=["Tenancy"])


@router.get("/tenants/me", response_model=TenantContext)
def get_tenant_me(tenant_ctx: RequireTenantContext) -> TenantContext:
    """The identity the presented API key acts as."""
    return tenant_ctx
