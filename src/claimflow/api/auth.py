"""Claimflow API authentication and tenant context extraction.

API keys (X-Claimflow-API-Key header) are looked up in a registry loaded from
CLAIMFLOW_API_KEYS_JSON:

    {"<key>": {"organization_id": "org-1", "user_id": "u-1", "role": "admin"}}

Fails closed on missing or invalid credentials. Unknown roles are rejected.
"""

import hmac
import json
import logging
import os
from typing import Annotated

from fastapi import Depends, Request
from pydantic import BaseModel, ValidationError

from claimflow.errors import UnauthorizedError
from claimflow.tenancy import ALL_ROLES, Role, TenantContext

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Claimflow-API-Key"
API_KEYS_ENV = "CLAIMFLOW_API_KEYS_JSON"


class ApiKeyRecord(BaseModel):
    """API key registry entry: the identity the key acts as."""

    organization_id: str
    user_id: str
    role: str


def _load_api_key_registry() -> dict[str, ApiKeyRecord]:
    """Load the API key registry from the environment.

    Returns an empty registry if the variable is missing or not a JSON object.
    Malformed entries are skipped.
    """
    raw = os.environ.get(API_KEYS_ENV)
    if not raw:
        return {}

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Failed to parse %s; treating as empty registry", API_KEYS_ENV)
        return {}

    if not isinstance(parsed, dict):
        logger.warning("%s is not a dict; treating as empty registry", API_KEYS_ENV)
        return {}

    registry: dict[str, ApiKeyRecord] = {}
    for key, value in parsed.items():
        if not isinstance(key, str) or not isinstance(value, dict):
            continue
        try:
            registry[key] = ApiKeyRecord.model_validate(value)
        except ValidationError:
            continue

    return registry


def _constant_time_lookup(
    provided_key: str, registry: dict[str, ApiKeyRecord]
) -> ApiKeyRecord | None:
    """Compare against every registered key with hmac.compare_digest."""
    matched_record: ApiKeyRecord | None = None
    provided_bytes = provided_key.encode("utf-8")

    for registered_key, record in registry.items():
        if hmac.compare_digest(provided_bytes, registered_key.encode("utf-8")):
            matched_record = record

    return matched_record


def authenticate_request(request: Request) -> TenantContext:
    """Resolve the caller's TenantContext from the API key header.

    Raises:
        UnauthorizedError: If the key is missing or unknown, or maps to an
            unknown role.
    """
    api_key = request.headers.get(API_KEY_HEADER)
    if not api_key:
        raise UnauthorizedError("Missing API key")

    record = _constant_time_lookup(api_key, _load_api_key_registry())
    if record is None:
        raise UnauthorizedError("Invalid API key")

    role = record.role.strip().lower()
    if role not in ALL_ROLES:
        logger.warning("API key for organization %s has unknown role", record.organization_id)
        raise UnauthorizedError("Invalid credentials")

    return TenantContext(
        organization_id=record.organization_id,
        user_id=record.user_id,
        role=Role(role),
    )


def require_tenant_context(request: Request) -> TenantContext:
    """FastAPI dependency that enforces authentication.

    Stores the context on request.state.tenant_context. Route handlers bind
    it with tenant_scope() around their service calls.
    """
    tenant_ctx = authenticate_request(request)
    request.state.tenant_context = tenant_ctx
    return tenant_ctx


RequireTenantContext = Annotated[TenantContext, Depends(require_tenant_context)]
