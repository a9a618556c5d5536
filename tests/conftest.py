"""Pytest configuration and fixtures for Claimflow tests.

Every test starts from empty in-memory tables with Postgres and Redis
unconfigured, so services run against the in-memory backends unless a test
opts in.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from decimal import Decimal

import pytest

from claimflow.cache import CacheLayer, CacheTTL, InMemoryCacheStore
from claimflow.persistence.memory import clear_in_memory_tables
from claimflow.tenancy import Role, TenantContext

ORG_A = "org-a"
ORG_B = "org-b"

_ISOLATED_ENV = (
    "CLAIMFLOW_DATABASE_URL",
    "CLAIMFLOW_DATABASE_ADMIN_URL",
    "CLAIMFLOW_REDIS_URL",
    "CLAIMFLOW_CACHE_ENABLED",
    "CLAIMFLOW_API_KEYS_JSON",
    "CLAIMFLOW_OTEL_ENABLED",
    "CLAIMFLOW_QUEUE_MAX_ATTEMPTS",
    "CLAIMFLOW_QUEUE_BACKOFF_MS",
)


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Unset backend configuration and reset the in-memory tables."""
    for name in _ISOLATED_ENV:
        monkeypatch.delenv(name, raising=False)
    clear_in_memory_tables()
    yield
    clear_in_memory_tables()


@pytest.fixture
def cache_store() -> InMemoryCacheStore:
    return InMemoryCacheStore()


@pytest.fixture
def cache(cache_store: InMemoryCacheStore) -> CacheLayer:
    """Enabled cache over an in-memory store."""
    return CacheLayer(store=cache_store, enabled=True, ttl=CacheTTL())


def _make_context(
    role: Role, user_id: str = "user-1", organization_id: str = ORG_A
) -> TenantContext:
    return TenantContext(organization_id=organization_id, user_id=user_id, role=role)


@pytest.fixture
def make_ctx() -> Callable[..., TenantContext]:
    """Factory for TenantContext values, organization org-a by default."""
    return _make_context


@pytest.fixture
def admin_ctx() -> TenantContext:
    return _make_context(Role.ADMIN, user_id="admin-1")


@pytest.fixture
def claim_fields() -> dict[str, object]:
    """Valid CreateClaimInput fields."""
    return {
        "patient_id": "patient-1",
        "provider_id": "provider-1",
        "diagnosis_code": "A00.1",
        "amount": Decimal("1250.50"),
        "assigned_processor_id": "processor-1",
    }
