"""Ambient tenant context for Claimflow.

Every logical operation (one HTTP request, one job run) binds a
TenantContext before touching data. The value lives in a ContextVar, so each
asyncio task and each worker thread started through asyncio.to_thread sees
only the value bound for its own operation.

Usage:
    with tenant_scope(TenantContext(organization_id=org, user_id=uid, role=Role.ADMIN)):
        service.get(claim_id)
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict

from claimflow.errors import UnauthorizedError

T = TypeVar("T")

SYSTEM_USER_ID = "system"


class Role(str, Enum):
    """Roles that may act inside an organization."""

    ADMIN = "admin"
    PROCESSOR = "processor"
    PROVIDER = "provider"
    PATIENT = "patient"


ALL_ROLES: frozenset[str] = frozenset(r.value for r in Role)


class TenantContext(BaseModel):
    """Identity bound to one logical operation."""

    model_config = ConfigDict(frozen=True)

    organization_id: str
    user_id: str
    role: Role


_current_context: ContextVar[TenantContext | None] = ContextVar(
    "claimflow_tenant_context", default=None
)


def get_tenant_context() -> TenantContext:
    """Return the bound tenant context.

    Raises:
        UnauthorizedError: If no context is bound for this operation.
    """
    ctx = _current_context.get()
    if ctx is None:
        raise UnauthorizedError(
            "Tenant context not found. Bind one with tenant_scope() before data access."
        )
    return ctx


def get_optional_tenant_context() -> TenantContext | None:
    """Return the bound tenant context, or None."""
    return _current_context.get()


@contextmanager
def tenant_scope(ctx: TenantContext) -> Iterator[TenantContext]:
    """Bind ctx for the duration of the block, restoring the previous value after."""
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def run_with_tenant_context(
    ctx: TenantContext, fn: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Call fn with ctx bound."""
    with tenant_scope(ctx):
        return fn(*args, **kwargs)


def system_context(organization_id: str) -> TenantContext:
    """Context used by background job runs acting on behalf of an organization."""
    return TenantContext(
        organization_id=organization_id,
        user_id=SYSTEM_USER_ID,
        role=Role.ADMIN,
    )
