"""ClaimService - the tenant-scoped claim lifecycle.

Enforces invariants at the service layer (not the route layer):
- Tenant scoping from the ambient TenantContext on every call
- Role x operation permissions, including ownership checks
- The approved/paid lock and the status transition table
- Cache consistency: every write commits first, then bumps the tenant's cache
  generation and deletes the affected keys. Readers read the generation
  before the store and tag their entries with it, so a read that raced a
  write is never served once the write has returned.

Each operation runs in its own unit of work. Uses Postgres repositories when
CLAIMFLOW_DATABASE_URL is set, in-memory tables otherwise.
"""

from __future__ import annotations

import logging
from typing import TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from claimflow.cache import CacheLayer, build_claim_cache_key, build_claim_list_cache_key
from claimflow.errors import NotFoundError
from claimflow.models.claim import (
    BulkStatusUpdateInput,
    Claim,
    CreateClaimInput,
    ListClaimsQuery,
    PaginatedClaims,
    Pagination,
    UpdateClaimInput,
)
from claimflow.observability.metrics import (
    record_cache_lookup,
    record_claim_created,
    record_status_transition,
)
from claimflow.persistence.unit_of_work import open_unit_of_work
from claimflow.services.claims import permissions
from claimflow.services.claims.transitions import ensure_modifiable, validate_transition
from claimflow.tenancy import get_tenant_context

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

CLAIM_CACHE_TYPE = "claim"
CLAIM_LIST_CACHE_TYPE = "claim_list"


class ClaimService:
    """Service layer for claim operations.

    Usage:
        with tenant_scope(ctx):
            claim = ClaimService(cache=cache).create(CreateClaimInput(...))
    """

    def __init__(self, cache: CacheLayer | None = None) -> None:
        """Initialize the service.

        Args:
            cache: Claim cache. None disables caching.
        """
        self._cache = cache or CacheLayer(store=None, enabled=False)

    def create(self, data: CreateClaimInput) -> Claim:
        """Create a claim in status submitted."""
        ctx = get_tenant_context()
        permissions.check_create(ctx)

        with open_unit_of_work(ctx.organization_id) as uow:
            claim = uow.claims.create(
                patient_id=data.patient_id,
                provider_id=data.provider_id,
                diagnosis_code=data.diagnosis_code,
                amount=data.amount,
                assigned_processor_id=data.assigned_processor_id,
            )

        self._cache.invalidate_claims(ctx.organization_id, [])
        record_claim_created(ctx.organization_id)

        logger.info(
            "Created claim %s",
            claim.id,
            extra={"organization_id": ctx.organization_id, "user_id": ctx.user_id},
        )
        return claim

    def get(self, claim_id: str) -> Claim:
        """Get one claim, cache first.

        A cached claim is permission-checked exactly like a fresh read.

        Raises:
            NotFoundError: If the claim does not exist in this organization.
            ForbiddenError: If the caller's role may not read it.
        """
        ctx = get_tenant_context()
        cache_key = build_claim_cache_key(ctx.organization_id, claim_id)

        generation = self._cache.current_generation(ctx.organization_id)
        cached = self._load_cached(cache_key, generation, Claim, CLAIM_CACHE_TYPE)
        if cached is not None:
            permissions.check_read(ctx, cached)
            return cached

        with open_unit_of_work(ctx.organization_id) as uow:
            claim = uow.claims.find_by_id(claim_id)
        if claim is None:
            raise NotFoundError("Claim")

        permissions.check_read(ctx, claim)
        self._cache.set_versioned(
            cache_key, claim.model_dump_json(), self._cache.ttl.claim, generation
        )
        return claim

    def list(self, query: ListClaimsQuery) -> PaginatedClaims:
        """List claims visible to the caller.

        Role scope is forced onto the query before it is used for the cache
        key or the repository, so callers cannot widen it through filters.
        """
        ctx = get_tenant_context()
        effective = permissions.apply_role_filters(ctx, query)
        cache_key = build_claim_list_cache_key(ctx.organization_id, effective.cache_filters())

        generation = self._cache.current_generation(ctx.organization_id)
        cached = self._load_cached(cache_key, generation, PaginatedClaims, CLAIM_LIST_CACHE_TYPE)
        if cached is not None:
            return cached

        with open_unit_of_work(ctx.organization_id) as uow:
            items, total = uow.claims.list(effective)

        page = PaginatedClaims(
            data=items,
            pagination=Pagination(
                total=total,
                limit=effective.limit,
                offset=effective.offset,
                has_more=effective.offset + len(items) < total,
            ),
        )
        self._cache.set_versioned(
            cache_key, page.model_dump_json(), self._cache.ttl.claim_list, generation
        )
        return page

    def update(self, claim_id: str, updates: UpdateClaimInput) -> Claim:
        """Apply a partial update to one claim.

        The row is read with a row lock, so concurrent direct updates of the
        same claim serialize in the store.

        Raises:
            NotFoundError: If the claim does not exist in this organization.
            ForbiddenError: If the caller may not update it, or it is approved/paid.
            BusinessRuleError: If the requested status is not reachable.
        """
        ctx = get_tenant_context()
        changes = updates.changes()

        with open_unit_of_work(ctx.organization_id) as uow:
            current = uow.claims.find_by_id(claim_id, for_update=True)
            if current is None:
                raise NotFoundError("Claim")

            permissions.check_update(ctx, current)
            ensure_modifiable(current.status)

            status_changed = updates.status is not None and updates.status != current.status
            if status_changed:
                validate_transition(current.status, updates.status)

            updated = uow.claims.update(claim_id, changes)
            if updated is None:
                raise NotFoundError("Claim")

        self._cache.invalidate_claims(ctx.organization_id, [claim_id])

        if status_changed:
            record_status_transition(current.status.value, updated.status.value)
            logger.info(
                "Claim %s moved %s -> %s",
                claim_id,
                current.status.value,
                updated.status.value,
                extra={"organization_id": ctx.organization_id, "user_id": ctx.user_id},
            )
        return updated

    def bulk_update_status(self, data: BulkStatusUpdateInput) -> list[Claim]:
        """Set one status on many claims. Admin only.

        Every id is resolved within the organization before anything is
        written; the first unresolved id fails the whole call. This is an
        administrative override and does not consult the transition table.

        Raises:
            ForbiddenError: If the caller is not an admin.
            NotFoundError: Naming the first id that does not resolve.
        """
        ctx = get_tenant_context()
        permissions.check_bulk_update(ctx)

        with open_unit_of_work(ctx.organization_id) as uow:
            found = {c.id: c for c in uow.claims.find_many(data.claim_ids)}
            for claim_id in data.claim_ids:
                if claim_id not in found:
                    raise NotFoundError(f"Claim {claim_id}")
            updated = uow.claims.bulk_update_status(data.claim_ids, data.status)

        self._cache.invalidate_claims(ctx.organization_id, data.claim_ids)

        for claim in updated:
            before = found[claim.id]
            if before.status != claim.status:
                record_status_transition(before.status.value, claim.status.value)

        logger.info(
            "Bulk status update to %s on %d claims",
            data.status.value,
            len(updated),
            extra={"organization_id": ctx.organization_id, "user_id": ctx.user_id},
        )
        return updated

    def _load_cached(
        self, key: str, generation: int | None, model: type[ModelT], cache_type: str
    ) -> ModelT | None:
        raw = self._cache.get_versioned(key, generation)
        if raw is None:
            record_cache_lookup(cache_type, hit=False)
            return None
        try:
            value = model.model_validate_json(raw)
        except PydanticValidationError as e:
            logger.warning("Discarding unreadable cache entry %s: %s", key, e)
            self._cache.delete(key)
            record_cache_lookup(cache_type, hit=False)
            return None
        record_cache_lookup(cache_type, hit=True)
        return value
