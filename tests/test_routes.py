# This project was developed with assistance from AI tools.
"""Tests for the access, approval, audit and health REST endpoints."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from xpress_db import get_db

from xpress_authz.core.config import settings
from xpress_authz.main import app
from xpress_authz.middleware.auth import MFA_CHALLENGE_HEADER, MFA_VERIFIED_HEADER, get_current_user
from xpress_authz.services.tokens import TokenRegistry

from .factories import make_engine, make_orchestrator, make_user

REQUESTER = make_user(user_id="requester", role="ops_manager")
MANAGER = make_user(user_id="mgr-1", role="regional_manager")
EXEC_1 = make_user(user_id="exec-1", role="executive", regions=("*",))
EXEC_2 = make_user(user_id="exec-2", role="executive", regions=("*",))
OUTSIDER = make_user(user_id="support-1", role="support")

ALERTS_BODY = {
    "action": "configure_alerts",
    "justification": "Raise surge alert thresholds for the holiday weekend",
    "requested_action": {"action": "configure_alerts", "region": "ncr-manila"},
}

UNMASK_BODY = {
    "action": "unmask_pii_with_mfa",
    "justification": "Fraud investigation FRD-2025-014 needs rider identities",
    "requested_action": {
        "action": "unmask_pii_with_mfa",
        "user_ids": ["rider-1"],
        "investigation_case": "FRD-2025-014",
    },
}


class _Caller:
    """Mutable stand-in for the authenticated user."""

    def __init__(self, user):
        self.user = user

    def __call__(self):
        return self.user


@pytest.fixture
def caller():
    current = _Caller(REQUESTER)
    app.dependency_overrides[get_current_user] = current
    yield current
    app.dependency_overrides.clear()


@pytest.fixture
def services():
    """Patch route-level service lookups with fresh in-memory wiring."""
    tokens = TokenRegistry()
    engine = make_engine(token_registry=tokens)
    orchestrator = make_orchestrator(token_registry=tokens)
    with (
        patch("xpress_authz.routes.access.get_access_engine", return_value=engine),
        patch("xpress_authz.routes.health.get_access_engine", return_value=engine),
        patch("xpress_authz.middleware.auth.get_access_engine", return_value=engine),
        patch("xpress_authz.routes.approvals.get_approval_orchestrator", return_value=orchestrator),
    ):
        yield engine, orchestrator


@pytest.fixture
def client(caller, services):
    return TestClient(app)


# ---------------------------------------------------------------------------
# Health / root
# ---------------------------------------------------------------------------


def test_root(client):
    assert client.get("/").json() == {"message": "Xpress Ops Authorization API"}


def test_health_reports_registry(client):
    body = client.get("/health/").json()
    assert body["status"] == "ok"
    assert body["workflows"] == 12
    assert body["decision_cache_entries"] == 0


# ---------------------------------------------------------------------------
# Access endpoints
# ---------------------------------------------------------------------------


class TestEvaluate:
    """POST /api/access/evaluate"""

    def test_denial_returned_as_data(self, client):
        resp = client.post(
            "/api/access/evaluate",
            json={"permission": "view_live_map", "context": {"region_id": "cebu"}},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["allowed"] is False
        assert body["reason"].startswith("region_access_denied")

    def test_grant(self, client):
        resp = client.post(
            "/api/access/evaluate",
            json={"permission": "view_live_map", "context": {"region_id": "ncr-manila"}},
        )
        assert resp.json()["allowed"] is True

    def test_mfa_header_marks_context_verified(self, client, caller):
        caller.user = make_user(user_id="sup-1", role="support", regions=("cebu",))
        payload = {
            "permission": "view_vehicles_support",
            "context": {"region_id": "ncr-manila", "case_id": "SUP-2025-001"},
        }

        unverified = client.post("/api/access/evaluate", json=payload).json()
        verified = client.post(
            "/api/access/evaluate", json=payload, headers={MFA_VERIFIED_HEADER: "true"}
        ).json()

        assert unverified["requires_mfa"] is True
        assert verified["requires_mfa"] is False
        assert "mfa_verified" in verified["applied_policies"]

    def test_skip_mfa_alias_is_denied(self, client):
        resp = client.post(
            "/api/access/evaluate",
            json={"permission": "view_live_map", "context": {"skipMFA": True}},
        )
        assert resp.json()["reason"] == "mfa_bypass_attempt_detected"

    def test_unknown_permission_is_problem_details(self, client):
        resp = client.post("/api/access/evaluate", json={"permission": "fly"})
        assert resp.status_code == 422
        body = resp.json()
        assert body["title"] == "Unprocessable Entity"
        assert body["status"] == 422
        assert body["detail"] == "Request validation failed"
        assert body["errors"][0].startswith("body.permission: ")


def test_list_vehicle_permissions(client, caller):
    caller.user = make_user(user_id="viewer", role="region_viewer")
    body = client.get("/api/access/permissions").json()
    assert body == {
        "user_id": "viewer",
        "permissions": ["view_vehicle_dashboard", "view_vehicles_basic"],
    }


def test_validate_permissions(client):
    resp = client.post(
        "/api/access/validate",
        json={"permissions": ["view_vehicles_basic", "approve_vehicle_purchases"]},
    )
    assert resp.json() == {"valid": False, "missing_permissions": ["approve_vehicle_purchases"]}


# ---------------------------------------------------------------------------
# Workflow advisory endpoints
# ---------------------------------------------------------------------------


class TestWorkflows:
    def test_ops_manager_approvable_workflows(self, client):
        body = client.get("/api/approvals/workflows").json()
        assert [w["action"] for w in body] == ["configure_alerts"]

    def test_executive_sees_all_workflows(self, client, caller):
        caller.user = EXEC_1
        assert len(client.get("/api/approvals/workflows").json()) == 12

    def test_template(self, client):
        body = client.get("/api/approvals/workflows/approve_payout_batch/template").json()
        assert body["requested_action"]["action"] == "approve_payout_batch"
        assert body["ttl_hours"] == 0.5

    def test_unknown_template_404(self, client):
        resp = client.get("/api/approvals/workflows/launch_rockets/template")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Unknown workflow action"

    def test_risk(self, client):
        body = client.get("/api/approvals/workflows/unmask_pii_with_mfa/risk").json()
        assert body["risk_level"] == "critical"

    def test_notifications(self, client):
        body = client.get("/api/approvals/workflows/configure_alerts/notifications").json()
        assert body["escalation_hours"] == 8
        assert body["notify_on_rejection"] is False

    def test_estimate(self, client):
        body = client.get("/api/approvals/workflows/cross_region_override/estimate").json()
        assert body == {"action": "cross_region_override", "estimated_time": "2-4 hours"}


# ---------------------------------------------------------------------------
# Approval lifecycle
# ---------------------------------------------------------------------------


class TestApprovalLifecycle:
    def test_create_returns_201(self, client):
        resp = client.post("/api/approvals", json=ALERTS_BODY)
        assert resp.status_code == 201
        assert resp.json()["status"] == "pending_approval"

    def test_create_invalid_returns_itemized_422(self, client):
        resp = client.post("/api/approvals", json={**ALERTS_BODY, "justification": "short"})
        assert resp.status_code == 422
        body = resp.json()
        assert body["detail"] == "Approval request validation failed"
        assert body["errors"] == ["Justification must be at least 10 characters"]

    def test_create_lists_every_failure(self, client):
        resp = client.post(
            "/api/approvals",
            json={
                "action": "unmask_pii_with_mfa",
                "justification": "short",
                "requested_action": {"action": "unmask_pii_with_mfa"},
            },
        )
        assert resp.status_code == 422
        assert resp.json()["errors"] == [
            "Justification must be at least 10 characters",
            "user_ids array is required for PII unmasking requests",
            "investigation_case is required for PII unmasking requests",
        ]

    def test_approve_issues_token(self, client, caller):
        request_id = client.post("/api/approvals", json=ALERTS_BODY).json()["request_id"]

        caller.user = MANAGER
        resp = client.post(f"/api/approvals/{request_id}/approve")

        assert resp.status_code == 200
        body = resp.json()
        assert body["result"] == "approved"
        assert body["token"]["requester_id"] == "requester"

    def test_issued_token_grants_access(self, client, caller):
        request_id = client.post("/api/approvals", json=ALERTS_BODY).json()["request_id"]
        caller.user = MANAGER
        client.post(f"/api/approvals/{request_id}/approve")

        caller.user = REQUESTER
        resp = client.post("/api/access/evaluate", json={"permission": "configure_alerts"})
        assert resp.json()["allowed"] is True

    def test_self_approval_conflict(self, client):
        request_id = client.post("/api/approvals", json=ALERTS_BODY).json()["request_id"]
        resp = client.post(f"/api/approvals/{request_id}/approve")
        assert resp.status_code == 409
        assert resp.json()["detail"] == "Requesters cannot approve their own requests"

    def test_approve_unknown_404(self, client, caller):
        caller.user = MANAGER
        assert client.post("/api/approvals/apr_missing/approve").status_code == 404

    def test_mfa_challenge_then_verified_approval(self, client, caller):
        request_id = client.post("/api/approvals", json=UNMASK_BODY).json()["request_id"]

        caller.user = EXEC_1
        challenged = client.post(f"/api/approvals/{request_id}/approve")
        assert challenged.status_code == 401
        assert challenged.headers[MFA_CHALLENGE_HEADER].startswith("mfa_")

        first = client.post(
            f"/api/approvals/{request_id}/approve", headers={MFA_VERIFIED_HEADER: "true"}
        )
        assert first.json()["result"] == "recorded"

        caller.user = EXEC_2
        second = client.post(
            f"/api/approvals/{request_id}/approve", headers={MFA_VERIFIED_HEADER: "true"}
        )
        assert second.json()["result"] == "approved"

    def test_reject(self, client, caller):
        request_id = client.post("/api/approvals", json=ALERTS_BODY).json()["request_id"]
        caller.user = MANAGER
        resp = client.post(f"/api/approvals/{request_id}/reject", json={"reason": "Not today"})
        assert resp.json()["result"] == "rejected"

        fetched = client.get(f"/api/approvals/{request_id}").json()
        assert fetched["status"] == "rejected"

    def test_get_unknown_request_404(self, client):
        assert client.get("/api/approvals/apr_missing").status_code == 404

    def test_requester_can_read_own_request(self, client):
        request_id = client.post("/api/approvals", json=ALERTS_BODY).json()["request_id"]
        resp = client.get(f"/api/approvals/{request_id}")
        assert resp.status_code == 200
        assert resp.json()["justification"] == ALERTS_BODY["justification"]

    def test_unrelated_caller_gets_404(self, client, caller):
        request_id = client.post("/api/approvals", json=ALERTS_BODY).json()["request_id"]
        caller.user = OUTSIDER
        resp = client.get(f"/api/approvals/{request_id}")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Approval request not found"


class TestTokenRevocation:
    def _issue(self, client, caller) -> str:
        caller.user = REQUESTER
        request_id = client.post("/api/approvals", json=ALERTS_BODY).json()["request_id"]
        caller.user = MANAGER
        return client.post(f"/api/approvals/{request_id}/approve").json()["token"]["token_id"]

    def test_revoke(self, client, caller):
        token_id = self._issue(client, caller)
        caller.user = EXEC_1
        resp = client.delete(f"/api/approvals/tokens/{token_id}")
        assert resp.json() == {"revoked": True, "reason": "revoked"}

    def test_revoke_needs_authority(self, client, caller):
        token_id = self._issue(client, caller)
        caller.user = REQUESTER
        resp = client.delete(f"/api/approvals/tokens/{token_id}")
        assert resp.status_code == 403
        assert resp.json()["detail"] == "insufficient_authority"

    def test_revoke_unknown_404(self, client, caller):
        caller.user = EXEC_1
        assert client.delete("/api/approvals/tokens/tok_missing").status_code == 404


# ---------------------------------------------------------------------------
# Audit endpoints
# ---------------------------------------------------------------------------


AUDITOR = make_user(user_id="auditor-1", role="auditor")


class TestAuditRoutes:
    def test_requires_audit_permission(self, client):
        resp = client.get("/api/audit/verify")
        assert resp.status_code == 403

    def test_log_backend_unavailable(self, client, caller, monkeypatch):
        monkeypatch.setattr(settings, "AUDIT_BACKEND", "log")
        caller.user = AUDITOR
        resp = client.get("/api/audit/verify")
        assert resp.status_code == 503

    def test_verify_chain(self, client, caller, monkeypatch):
        monkeypatch.setattr(settings, "AUDIT_BACKEND", "database")
        caller.user = AUDITOR

        async def _fake_db():
            yield MagicMock()

        app.dependency_overrides[get_db] = _fake_db
        with patch(
            "xpress_authz.routes.audit.verify_audit_chain",
            new_callable=AsyncMock,
            return_value={"status": "OK", "events_checked": 3},
        ):
            resp = client.get("/api/audit/verify")

        assert resp.status_code == 200
        assert resp.json() == {"status": "OK", "events_checked": 3, "first_break_id": None}

    def test_decision_events(self, client, caller, monkeypatch):
        monkeypatch.setattr(settings, "AUDIT_BACKEND", "database")
        caller.user = AUDITOR

        event = MagicMock()
        event.id = 7
        event.timestamp = "2025-06-01 12:00:00+00:00"
        event.event_type = "access_decision"
        event.user_id = "user-1"
        event.decision_id = "dec_abc"
        event.approval_request_id = None
        event.event_data = {"allowed": True}

        async def _fake_db():
            yield MagicMock()

        app.dependency_overrides[get_db] = _fake_db
        with patch(
            "xpress_authz.routes.audit.get_events_by_decision",
            new_callable=AsyncMock,
            return_value=[event],
        ):
            resp = client.get("/api/audit/decisions/dec_abc")

        body = resp.json()
        assert body["count"] == 1
        assert body["events"][0]["event_type"] == "access_decision"
