"""Role x operation permission matrix for claims and patient history.

Deny by default: a role absent from an operation's role set is refused.
Ownership rules for non-admin roles compare one claim attribute against the
acting user's id.

    role       create  read / update scope            bulk  list scope
    admin      yes     any / any                      yes   all
    processor  yes     assigned / assigned            no    assigned to self
    provider   yes     own provider_id / never        no    provider = self
    patient    no      own patient_id / never         no    patient = self
"""

from __future__ import annotations

from claimflow.errors import ForbiddenError
from claimflow.models.claim import Claim, ListClaimsQuery
from claimflow.tenancy import Role, TenantContext

CLAIM_CREATORS: frozenset[Role] = frozenset({Role.ADMIN, Role.PROCESSOR, Role.PROVIDER})
CLAIM_UPDATERS: frozenset[Role] = frozenset({Role.ADMIN, Role.PROCESSOR})
BULK_UPDATERS: frozenset[Role] = frozenset({Role.ADMIN})
HISTORY_WRITERS: frozenset[Role] = frozenset({Role.ADMIN, Role.PROVIDER})
HISTORY_READERS_ANY_PATIENT: frozenset[Role] = frozenset({Role.ADMIN, Role.PROVIDER})

# Claim attribute that must equal the acting user's id, per non-admin role.
OWNERSHIP_FIELD: dict[Role, str] = {
    Role.PROCESSOR: "assigned_processor_id",
    Role.PROVIDER: "provider_id",
    Role.PATIENT: "patient_id",
}

_READ_DENIED = {
    Role.PROCESSOR: "You can only view claims assigned to you",
    Role.PROVIDER: "You can only view your own claims",
    Role.PATIENT: "You can only view your own claims",
}


def _owns(ctx: TenantContext, claim: Claim) -> bool:
    field = OWNERSHIP_FIELD.get(ctx.role)
    return field is not None and getattr(claim, field) == ctx.user_id


def check_create(ctx: TenantContext) -> None:
    if ctx.role not in CLAIM_CREATORS:
        raise ForbiddenError("You cannot create claims")


def check_read(ctx: TenantContext, claim: Claim) -> None:
    if ctx.role == Role.ADMIN:
        return
    if not _owns(ctx, claim):
        raise ForbiddenError(_READ_DENIED.get(ctx.role, "Access forbidden"))


def check_update(ctx: TenantContext, claim: Claim) -> None:
    if ctx.role not in CLAIM_UPDATERS:
        raise ForbiddenError("You cannot update claims")
    if ctx.role == Role.PROCESSOR and not _owns(ctx, claim):
        raise ForbiddenError("You can only update claims assigned to you")


def check_bulk_update(ctx: TenantContext) -> None:
    if ctx.role not in BULK_UPDATERS:
        raise ForbiddenError("Only admins can perform bulk status updates")


def check_history_write(ctx: TenantContext) -> None:
    if ctx.role not in HISTORY_WRITERS:
        raise ForbiddenError("You cannot create patient history events")


def check_history_read(ctx: TenantContext, patient_id: str) -> None:
    if ctx.role in HISTORY_READERS_ANY_PATIENT:
        return
    if ctx.role == Role.PATIENT and patient_id == ctx.user_id:
        return
    raise ForbiddenError("You cannot view this patient history")


def apply_role_filters(ctx: TenantContext, query: ListClaimsQuery) -> ListClaimsQuery:
    """Force the caller's list scope.

    The forced filter replaces whatever the caller supplied for the same
    field, and party filters the role may not pivot on are cleared.
    """
    if ctx.role == Role.PROCESSOR:
        forced = {"assigned_processor_id": ctx.user_id, "patient_id": None, "provider_id": None}
    elif ctx.role == Role.PROVIDER:
        forced = {"provider_id": ctx.user_id, "patient_id": None}
    elif ctx.role == Role.PATIENT:
        forced = {"patient_id": ctx.user_id, "provider_id": None}
    else:
        return query
    return query.model_copy(update=forced)
