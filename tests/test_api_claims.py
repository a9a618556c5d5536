"""Tests for the Claimflow HTTP API.

Covers authentication, the error envelope, claim routes and patient history
routes against the in-memory backends. The reconciliation worker is off
except in the pipeline test, which runs the app's in-process worker.
"""

from __future__ import annotations

import json
import time
from typing import Any

import pytest
from fastapi.testclient import TestClient

from claimflow.api.auth import API_KEY_HEADER, API_KEYS_ENV
from claimflow.api.main import create_app
from claimflow.cache import CacheLayer, InMemoryCacheStore
from claimflow.jobs.queue import InMemoryJobQueue, RetryPolicy

KEYS = {
    "admin": "key-admin-a",
    "processor": "key-processor-a",
    "provider": "key-provider-a",
    "patient": "key-patient-a",
    "admin_b": "key-admin-b",
    "bad_role": "key-bad-role",
}


@pytest.fixture
def api_keys_config() -> dict[str, dict[str, str]]:
    """API key registry: four roles in org-a, one admin in org-b."""
    return {
        KEYS["admin"]: {"organization_id": "org-a", "user_id": "admin-1", "role": "admin"},
        KEYS["processor"]: {
            "organization_id": "org-a",
            "user_id": "processor-1",
            "role": "processor",
        },
        KEYS["provider"]: {
            "organization_id": "org-a",
            "user_id": "provider-1",
            "role": "provider",
        },
        KEYS["patient"]: {"organization_id": "org-a", "user_id": "patient-1", "role": "patient"},
        KEYS["admin_b"]: {"organization_id": "org-b", "user_id": "admin-2", "role": "admin"},
        KEYS["bad_role"]: {"organization_id": "org-a", "user_id": "x", "role": "superuser"},
    }


@pytest.fixture
def client(
    api_keys_config: dict[str, dict[str, str]], monkeypatch: pytest.MonkeyPatch
) -> TestClient:
    monkeypatch.setenv(API_KEYS_ENV, json.dumps(api_keys_config))
    app = create_app(
        cache=CacheLayer(store=InMemoryCacheStore(), enabled=True),
        job_queue=InMemoryJobQueue(),
        run_worker=False,
    )
    return TestClient(app)


def _headers(role: str) -> dict[str, str]:
    return {API_KEY_HEADER: KEYS[role]}


def _claim_body(**overrides: Any) -> dict[str, Any]:
    body = {
        "patient_id": "patient-1",
        "provider_id": "provider-1",
        "diagnosis_code": "A00.1",
        "amount": "1250.50",
        "assigned_processor_id": "processor-1",
    }
    body.update(overrides)
    return body


def _create_claim(client: TestClient, **overrides: Any) -> dict[str, Any]:
    response = client.post("/v1/claims", json=_claim_body(**overrides), headers=_headers("admin"))
    assert response.status_code == 201
    return response.json()


class TestHealth:
    def test_health_needs_no_key(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["version"] == "0.1.0"

    def test_metrics_need_no_key(self, client: TestClient) -> None:
        _create_claim(client)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "claimflow_claims_created_total" in response.text
        assert "claimflow_job_duration_seconds" in response.text


class TestAuthentication:
    def test_missing_key_returns_401_envelope(self, client: TestClient) -> None:
        """The error body carries code, message and the request id from the header."""
        response = client.get("/v1/tenants/me")

        assert response.status_code == 401
        body = response.json()
        assert body["code"] == "UNAUTHORIZED"
        assert body["message"] == "Missing API key"
        assert body["request_id"] == response.headers["X-Request-Id"]

    def test_invalid_key_returns_401(self, client: TestClient) -> None:
        response = client.get("/v1/tenants/me", headers={API_KEY_HEADER: "nope"})

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid API key"

    def test_unknown_role_rejected(self, client: TestClient) -> None:
        response = client.get("/v1/tenants/me", headers=_headers("bad_role"))

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid credentials"

    def test_tenants_me(self, client: TestClient) -> None:
        response = client.get("/v1/tenants/me", headers=_headers("processor"))

        assert response.status_code == 200
        assert response.json() == {
            "organization_id": "org-a",
            "user_id": "processor-1",
            "role": "processor",
        }

    def test_incoming_request_id_is_echoed(self, client: TestClient) -> None:
        response = client.get("/v1/tenants/me", headers={"X-Request-Id": "req-123"})

        assert response.headers["X-Request-Id"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_unsafe_request_id_is_replaced(self, client: TestClient) -> None:
        response = client.get("/v1/tenants/me", headers={"X-Request-Id": "a b<script>"})

        request_id = response.headers["X-Request-Id"]
        assert request_id != "a b<script>"
        assert response.json()["request_id"] == request_id

    def test_unknown_route_uses_error_envelope(self, client: TestClient) -> None:
        missing = client.get("/v1/nowhere")
        wrong_method = client.put("/health")

        assert missing.status_code == 404
        assert missing.json()["code"] == "NOT_FOUND"
        assert wrong_method.status_code == 405
        assert wrong_method.json()["code"] == "METHOD_NOT_ALLOWED"
        assert wrong_method.json()["request_id"] == wrong_method.headers["X-Request-Id"]


class TestCreateClaim:
    def test_create_returns_submitted_claim(self, client: TestClient) -> None:
        body = _create_claim(client)

        assert body["status"] == "submitted"
        assert body["organization_id"] == "org-a"
        assert body["amount"] == "1250.50"

    def test_patient_forbidden(self, client: TestClient) -> None:
        response = client.post("/v1/claims", json=_claim_body(), headers=_headers("patient"))

        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    def test_non_positive_amount_is_validation_error(self, client: TestClient) -> None:
        response = client.post(
            "/v1/claims", json=_claim_body(amount="-5"), headers=_headers("admin")
        )

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "VALIDATION_FAILED"
        assert [e["field"] for e in body["details"]["errors"]] == ["amount"]

    def test_status_not_accepted_on_create(self, client: TestClient) -> None:
        response = client.post(
            "/v1/claims", json=_claim_body(status="approved"), headers=_headers("admin")
        )

        assert response.status_code == 400


class TestGetClaim:
    def test_owner_roles_can_read(self, client: TestClient) -> None:
        claim = _create_claim(client)

        for role in ("admin", "processor", "provider", "patient"):
            response = client.get(f"/v1/claims/{claim['id']}", headers=_headers(role))
            assert response.status_code == 200, role
            assert response.json()["id"] == claim["id"]

    def test_non_owner_patient_forbidden(self, client: TestClient) -> None:
        claim = _create_claim(client, patient_id="patient-2")

        response = client.get(f"/v1/claims/{claim['id']}", headers=_headers("patient"))

        assert response.status_code == 403
        assert response.json()["message"] == "You can only view your own claims"

    def test_cross_tenant_is_404(self, client: TestClient) -> None:
        """Org B sees org A's claim exactly as it sees a missing one."""
        claim = _create_claim(client)

        foreign = client.get(f"/v1/claims/{claim['id']}", headers=_headers("admin_b"))
        missing = client.get("/v1/claims/no-such-claim", headers=_headers("admin_b"))

        assert foreign.status_code == missing.status_code == 404
        assert foreign.json()["message"] == missing.json()["message"] == "Claim not found"


class TestListClaims:
    def test_list_role_scoped(self, client: TestClient) -> None:
        _create_claim(client, patient_id="patient-1")
        _create_claim(client, patient_id="patient-2")

        response = client.get(
            "/v1/claims", params={"patient_id": "patient-2"}, headers=_headers("patient")
        )

        assert response.status_code == 200
        body = response.json()
        assert body["pagination"]["total"] == 1
        assert body["data"][0]["patient_id"] == "patient-1"

    def test_list_pagination(self, client: TestClient) -> None:
        for _ in range(3):
            _create_claim(client)

        response = client.get("/v1/claims", params={"limit": 2}, headers=_headers("admin"))

        assert response.json()["pagination"] == {
            "total": 3,
            "limit": 2,
            "offset": 0,
            "has_more": True,
        }

    def test_date_only_range_filters(self, client: TestClient) -> None:
        _create_claim(client)

        current = client.get(
            "/v1/claims", params={"from_date": "2020-01-01"}, headers=_headers("admin")
        )
        expired = client.get(
            "/v1/claims", params={"to_date": "2020-01-01T00:00:00"}, headers=_headers("admin")
        )

        assert current.status_code == 200
        assert current.json()["pagination"]["total"] == 1
        assert expired.status_code == 200
        assert expired.json()["pagination"]["total"] == 0

    @pytest.mark.parametrize(
        ("params", "field"),
        [
            ({"limit": "500"}, "limit"),
            ({"status": "archived"}, "status"),
            ({"sort_by": "diagnosis_code"}, "sort_by"),
            ({"min_amount": "500", "max_amount": "100"}, "request"),
        ],
    )
    def test_invalid_query_is_400(
        self, client: TestClient, params: dict[str, str], field: str
    ) -> None:
        response = client.get("/v1/claims", params=params, headers=_headers("admin"))

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "VALIDATION_FAILED"
        assert field in [e["field"] for e in body["details"]["errors"]]


class TestUpdateClaim:
    def test_valid_transition(self, client: TestClient) -> None:
        claim = _create_claim(client)

        response = client.patch(
            f"/v1/claims/{claim['id']}",
            json={"status": "under_review"},
            headers=_headers("processor"),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "under_review"

    def test_invalid_transition_is_422(self, client: TestClient) -> None:
        claim = _create_claim(client)

        response = client.patch(
            f"/v1/claims/{claim['id']}", json={"status": "paid"}, headers=_headers("admin")
        )

        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "INVALID_STATUS_TRANSITION"
        assert body["details"] == {
            "current_status": "submitted",
            "requested_status": "paid",
            "allowed_transitions": ["under_review", "rejected"],
        }

    def test_approved_claim_locked(self, client: TestClient) -> None:
        claim = _create_claim(client)
        for status in ("under_review", "approved"):
            client.patch(
                f"/v1/claims/{claim['id']}", json={"status": status}, headers=_headers("admin")
            )

        response = client.patch(
            f"/v1/claims/{claim['id']}", json={"amount": "10.00"}, headers=_headers("admin")
        )

        assert response.status_code == 403
        assert response.json()["message"] == "Cannot modify approved or paid claims"

    def test_empty_update_is_400(self, client: TestClient) -> None:
        claim = _create_claim(client)

        response = client.patch(f"/v1/claims/{claim['id']}", json={}, headers=_headers("admin"))

        assert response.status_code == 400

    def test_provider_cannot_update(self, client: TestClient) -> None:
        claim = _create_claim(client)

        response = client.patch(
            f"/v1/claims/{claim['id']}",
            json={"diagnosis_code": "B00"},
            headers=_headers("provider"),
        )

        assert response.status_code == 403

    def test_read_after_update_is_fresh(self, client: TestClient) -> None:
        """A cached claim never outlives a successful update."""
        claim = _create_claim(client)
        client.get(f"/v1/claims/{claim['id']}", headers=_headers("admin"))

        client.patch(
            f"/v1/claims/{claim['id']}", json={"diagnosis_code": "B00"}, headers=_headers("admin")
        )
        response = client.get(f"/v1/claims/{claim['id']}", headers=_headers("admin"))

        assert response.json()["diagnosis_code"] == "B00"


class TestBulkStatus:
    def test_admin_bulk_update(self, client: TestClient) -> None:
        ids = [_create_claim(client)["id"] for _ in range(2)]

        response = client.post(
            "/v1/claims/bulk-status",
            json={"claim_ids": ids, "status": "rejected"},
            headers=_headers("admin"),
        )

        assert response.status_code == 200
        assert {c["status"] for c in response.json()} == {"rejected"}

    def test_missing_id_named_in_404(self, client: TestClient) -> None:
        ids = [_create_claim(client)["id"], "ghost"]

        response = client.post(
            "/v1/claims/bulk-status",
            json={"claim_ids": ids, "status": "rejected"},
            headers=_headers("admin"),
        )

        assert response.status_code == 404
        assert response.json()["message"] == "Claim ghost not found"

    def test_processor_forbidden(self, client: TestClient) -> None:
        claim = _create_claim(client)

        response = client.post(
            "/v1/claims/bulk-status",
            json={"claim_ids": [claim["id"]], "status": "rejected"},
            headers=_headers("processor"),
        )

        assert response.status_code == 403

    def test_empty_id_list_is_400(self, client: TestClient) -> None:
        response = client.post(
            "/v1/claims/bulk-status",
            json={"claim_ids": [], "status": "rejected"},
            headers=_headers("admin"),
        )

        assert response.status_code == 400


class TestPatientHistoryRoutes:
    def _event_body(self, **overrides: Any) -> dict[str, Any]:
        body = {
            "patient_id": "patient-1",
            "event_type": "admission",
            "occurred_at": "2026-03-01T09:30:00Z",
        }
        body.update(overrides)
        return body

    def test_provider_records_event(self, client: TestClient) -> None:
        response = client.post(
            "/v1/patient-history", json=self._event_body(), headers=_headers("provider")
        )

        assert response.status_code == 201
        body = response.json()
        assert body["event_type"] == "admission"
        assert body["processed_at"] is None

    def test_unknown_event_type_is_400(self, client: TestClient) -> None:
        response = client.post(
            "/v1/patient-history",
            json=self._event_body(event_type="surgery"),
            headers=_headers("admin"),
        )

        assert response.status_code == 400

    def test_processor_cannot_record(self, client: TestClient) -> None:
        response = client.post(
            "/v1/patient-history", json=self._event_body(), headers=_headers("processor")
        )

        assert response.status_code == 403

    def test_patient_reads_own_history(self, client: TestClient) -> None:
        client.post("/v1/patient-history", json=self._event_body(), headers=_headers("admin"))

        own = client.get("/v1/patient-history/patient-1", headers=_headers("patient"))
        other = client.get("/v1/patient-history/patient-2", headers=_headers("patient"))

        assert own.status_code == 200
        assert own.json()["total"] == 1
        assert other.status_code == 403


class TestUnhandledErrors:
    def test_unexpected_exception_is_generic_500(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def explode(claim_id: str) -> None:
            raise RuntimeError("database exploded")

        monkeypatch.setattr(client.app.state.claim_service, "get", explode)
        safe_client = TestClient(client.app, raise_server_exceptions=False)

        response = safe_client.get("/v1/claims/any", headers=_headers("admin"))

        assert response.status_code == 500
        body = response.json()
        assert body["code"] == "INTERNAL_ERROR"
        assert "exploded" not in body["message"]


class TestEventPipeline:
    def test_admission_event_reconciles_claims(
        self, api_keys_config: dict[str, dict[str, str]], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """With the in-process worker, recording an admission moves the claim to review."""
        monkeypatch.setenv(API_KEYS_ENV, json.dumps(api_keys_config))
        app = create_app(
            cache=CacheLayer(store=InMemoryCacheStore(), enabled=True),
            job_queue=InMemoryJobQueue(RetryPolicy(backoff_base_seconds=0)),
        )

        with TestClient(app) as client:
            claim = _create_claim(client)
            client.get(f"/v1/claims/{claim['id']}", headers=_headers("admin"))
            response = client.post(
                "/v1/patient-history",
                json={
                    "patient_id": "patient-1",
                    "event_type": "admission",
                    "occurred_at": "2026-03-01T09:30:00Z",
                },
                headers=_headers("provider"),
            )
            assert response.status_code == 201

            status = None
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                status = client.get(
                    f"/v1/claims/{claim['id']}", headers=_headers("admin")
                ).json()["status"]
                if status == "under_review":
                    break
                time.sleep(0.05)

        assert status == "under_review"
