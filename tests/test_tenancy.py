"""Tests for the ambient tenant context."""

from __future__ import annotations

import asyncio

import pytest

from claimflow.errors import UnauthorizedError
from claimflow.tenancy import (
    SYSTEM_USER_ID,
    Role,
    TenantContext,
    get_optional_tenant_context,
    get_tenant_context,
    run_with_tenant_context,
    system_context,
    tenant_scope,
)


def _ctx(org: str, user: str = "u-1", role: Role = Role.ADMIN) -> TenantContext:
    return TenantContext(organization_id=org, user_id=user, role=role)


class TestTenantScope:
    """Binding and reading the context."""

    def test_get_without_binding_raises_unauthorized(self) -> None:
        """Reading the context outside any scope is an UnauthorizedError."""
        with pytest.raises(UnauthorizedError) as exc_info:
            get_tenant_context()

        assert exc_info.value.status_code == 401
        assert get_optional_tenant_context() is None

    def test_scope_binds_and_restores(self) -> None:
        """The bound value is visible inside the block and gone after it."""
        ctx = _ctx("org-a")

        with tenant_scope(ctx):
            assert get_tenant_context() == ctx

        assert get_optional_tenant_context() is None

    def test_nested_scope_restores_outer(self) -> None:
        """A nested scope shadows the outer one until it exits."""
        outer = _ctx("org-a")
        inner = _ctx("org-b")

        with tenant_scope(outer):
            with tenant_scope(inner):
                assert get_tenant_context().organization_id == "org-b"
            assert get_tenant_context().organization_id == "org-a"

    def test_scope_restored_when_block_raises(self) -> None:
        """An exception inside the block still unbinds the context."""
        with pytest.raises(RuntimeError), tenant_scope(_ctx("org-a")):
            raise RuntimeError("boom")

        assert get_optional_tenant_context() is None

    def test_run_with_tenant_context(self) -> None:
        """run_with_tenant_context calls fn with the context bound."""
        result = run_with_tenant_context(
            _ctx("org-a", user="u-9"), lambda suffix: get_tenant_context().user_id + suffix, "!"
        )

        assert result == "u-9!"

    def test_context_is_immutable(self) -> None:
        """TenantContext is frozen."""
        ctx = _ctx("org-a")

        with pytest.raises(Exception):
            ctx.organization_id = "org-b"  # type: ignore[misc]


class TestConcurrentIsolation:
    """Interleaved operations never observe each other's context."""

    def test_concurrent_tasks_see_their_own_context(self) -> None:
        """Two asyncio tasks interleaving at await points keep their own bindings."""

        def current_org() -> str:
            return get_tenant_context().organization_id

        async def operation(org: str) -> list[str]:
            seen = []
            with tenant_scope(_ctx(org)):
                for _ in range(5):
                    await asyncio.sleep(0)
                    seen.append(current_org())
                    seen.append(await asyncio.to_thread(current_org))
            return seen

        async def main() -> tuple[list[str], list[str]]:
            a, b = await asyncio.gather(operation("org-a"), operation("org-b"))
            return a, b

        seen_a, seen_b = asyncio.run(main())

        assert set(seen_a) == {"org-a"}
        assert set(seen_b) == {"org-b"}


class TestSystemContext:
    def test_system_context_is_admin_system_user(self) -> None:
        """Background runs act as the system user with the admin role."""
        ctx = system_context("org-a")

        assert ctx.organization_id == "org-a"
        assert ctx.user_id == SYSTEM_USER_ID
        assert ctx.role == Role.ADMIN
