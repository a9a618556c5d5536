"""Claims service module.

Provides ClaimService with:
- Tenant scoping from the ambient TenantContext
- Role permissions and the status state machine
- Cache invalidation after every committed write
"""

from claimflow.services.claims.service import ClaimService

__all__ = ["ClaimService"]
