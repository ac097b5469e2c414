# This project was developed with assistance from AI tools.
"""Tests for the Approval Workflow Orchestrator lifecycle."""

import asyncio
from datetime import timedelta

import pytest

from xpress_db.enums import ApprovalStatus, Permission

from xpress_authz.schemas.approval import ApprovalRequest, CreateApprovalRequestBody, ValidationResult
from xpress_authz.services.tokens import TokenRegistry

from .factories import NOW, make_engine, make_orchestrator, make_user

REQUESTER = make_user(user_id="requester", role="ops_manager")
MANAGER_1 = make_user(user_id="mgr-1", role="regional_manager")
MANAGER_2 = make_user(user_id="mgr-2", role="regional_manager")
EXEC_1 = make_user(user_id="exec-1", role="executive", regions=("*",))
EXEC_2 = make_user(user_id="exec-2", role="executive", regions=("*",))
EXEC_3 = make_user(user_id="exec-3", role="executive", regions=("*",))


def _alerts_body(**kwargs) -> CreateApprovalRequestBody:
    values = {
        "action": "configure_alerts",
        "justification": "Raise surge alert thresholds for the holiday weekend",
        "requested_action": {"action": "configure_alerts", "region": "ncr-manila"},
    }
    values.update(kwargs)
    return CreateApprovalRequestBody(**values)


def _unmask_body() -> CreateApprovalRequestBody:
    return CreateApprovalRequestBody(
        action="unmask_pii_with_mfa",
        justification="Fraud investigation FRD-2025-014 needs rider identities",
        requested_action={
            "action": "unmask_pii_with_mfa",
            "user_ids": ["rider-1"],
            "investigation_case": "FRD-2025-014",
        },
    )


async def _open(orchestrator, body=None) -> ApprovalRequest:
    request = await orchestrator.create_approval_request(body or _alerts_body(), REQUESTER)
    assert isinstance(request, ApprovalRequest)
    return request


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_opens_pending_request():
    orchestrator = make_orchestrator()
    request = await _open(orchestrator)

    assert request.status == ApprovalStatus.PENDING_APPROVAL
    assert request.required_approvals == 1
    assert [t.to_status for t in request.history] == [
        ApprovalStatus.DRAFT,
        ApprovalStatus.VALIDATED,
        ApprovalStatus.PENDING_APPROVAL,
    ]
    assert (await orchestrator.get_request(request.request_id)).request_id == request.request_id
    orchestrator.audit.log_approval_action.assert_awaited_once_with("created", request, "requester")
    orchestrator.notifier.notify.assert_awaited_once()


@pytest.mark.asyncio
async def test_dual_approval_workflow_needs_two():
    request = await _open(make_orchestrator(), _unmask_body())
    assert request.required_approvals == 2


@pytest.mark.asyncio
async def test_create_unknown_action():
    orchestrator = make_orchestrator()
    result = await orchestrator.create_approval_request(_alerts_body(action="launch_rockets"), REQUESTER)
    assert isinstance(result, ValidationResult)
    assert result.errors == ["Unknown workflow action: launch_rockets"]


@pytest.mark.asyncio
async def test_create_invalid_body_is_not_stored():
    orchestrator = make_orchestrator()
    result = await orchestrator.create_approval_request(_alerts_body(justification="short"), REQUESTER)
    assert isinstance(result, ValidationResult)
    assert not result.valid
    orchestrator.audit.log_approval_action.assert_not_awaited()
    assert await orchestrator.store.list_by_status(ApprovalStatus.PENDING_APPROVAL) == []


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_single_approval_issues_token():
    orchestrator = make_orchestrator()
    request = await _open(orchestrator)

    outcome = await orchestrator.approve(request.request_id, MANAGER_1)

    assert outcome.result == "approved"
    assert outcome.request.status == ApprovalStatus.APPROVED
    token = outcome.token
    assert token.requester_id == "requester"
    assert token.granted_permissions == (Permission.CONFIGURE_ALERTS,)
    assert token.granted_regions == ("ncr-manila",)
    assert token.expires_at == NOW + timedelta(hours=1)
    assert token.grantor_level == 40
    assert token.granted_by == ("mgr-1",)
    assert await orchestrator.tokens.get(token.token_id) == token


@pytest.mark.asyncio
async def test_requested_ttl_sets_token_expiry():
    orchestrator = make_orchestrator()
    request = await _open(orchestrator, _alerts_body(ttl_hours=0.5))
    outcome = await orchestrator.approve(request.request_id, MANAGER_1)
    assert outcome.token.expires_at == NOW + timedelta(minutes=30)


@pytest.mark.asyncio
async def test_dual_approval_with_mfa():
    orchestrator = make_orchestrator()
    request = await _open(orchestrator, _unmask_body())

    first = await orchestrator.approve(request.request_id, EXEC_1, mfa_verified=True)
    assert first.result == "recorded"
    assert first.token is None

    repeat = await orchestrator.approve(request.request_id, EXEC_1, mfa_verified=True)
    assert repeat.result == "already_recorded"

    second = await orchestrator.approve(request.request_id, EXEC_2, mfa_verified=True)
    assert second.result == "approved"
    assert set(second.token.granted_by) == {"exec-1", "exec-2"}
    assert second.token.grantor_level == 60
    assert second.token.expires_at == NOW + timedelta(minutes=30)


@pytest.mark.asyncio
async def test_mfa_required_for_sensitive_workflow():
    orchestrator = make_orchestrator()
    request = await _open(orchestrator, _unmask_body())

    outcome = await orchestrator.approve(request.request_id, EXEC_1)

    assert outcome.result == "mfa_required"
    assert outcome.mfa_challenge.challenge_id.startswith("mfa_")
    assert outcome.mfa_challenge.user_id == "exec-1"
    assert (await orchestrator.get_request(request.request_id)).approvals == []


@pytest.mark.asyncio
async def test_self_approval_refused():
    orchestrator = make_orchestrator()
    request = await orchestrator.create_approval_request(_alerts_body(), MANAGER_1)
    outcome = await orchestrator.approve(request.request_id, MANAGER_1)
    assert outcome.result == "refused"
    assert outcome.errors == ["Requesters cannot approve their own requests"]


@pytest.mark.asyncio
async def test_ineligible_approver_refused():
    orchestrator = make_orchestrator()
    request = await _open(orchestrator)
    viewer = make_user(user_id="viewer", role="region_viewer")
    outcome = await orchestrator.approve(request.request_id, viewer)
    assert outcome.result == "refused"
    assert outcome.errors == ["Approver is not eligible for configure_alerts"]


@pytest.mark.asyncio
async def test_unknown_request_refused():
    outcome = await make_orchestrator().approve("apr_missing", MANAGER_1)
    assert outcome.result == "refused"
    assert outcome.request is None
    assert outcome.errors == ["Approval request not found"]


@pytest.mark.asyncio
async def test_approving_finished_request():
    orchestrator = make_orchestrator()
    request = await _open(orchestrator)
    approved = await orchestrator.approve(request.request_id, MANAGER_1)

    again = await orchestrator.approve(request.request_id, MANAGER_1)
    assert again.result == "already_recorded"
    assert again.token == approved.token

    late = await orchestrator.approve(request.request_id, MANAGER_2)
    assert late.result == "refused"
    assert late.errors == ["Request is approved"]


@pytest.mark.asyncio
async def test_concurrent_final_approvals_issue_one_token():
    orchestrator = make_orchestrator()
    request = await _open(orchestrator, _unmask_body())
    await orchestrator.approve(request.request_id, EXEC_1, mfa_verified=True)

    outcomes = await asyncio.gather(
        orchestrator.approve(request.request_id, EXEC_2, mfa_verified=True),
        orchestrator.approve(request.request_id, EXEC_3, mfa_verified=True),
    )

    assert sorted(o.result for o in outcomes) == ["approved", "refused"]
    assert len(await orchestrator.tokens.tokens_for("requester")) == 1


@pytest.mark.asyncio
async def test_finished_requests_release_their_lock():
    orchestrator = make_orchestrator()
    approved = await _open(orchestrator)
    rejected = await _open(orchestrator)
    pending = await _open(orchestrator, _unmask_body())

    await orchestrator.approve(approved.request_id, MANAGER_1)
    await orchestrator.reject(rejected.request_id, MANAGER_1, "Not during peak hours")
    await orchestrator.approve(pending.request_id, EXEC_1, mfa_verified=True)

    assert set(orchestrator._locks) == {pending.request_id}


@pytest.mark.asyncio
async def test_audit_failure_propagates_without_token():
    orchestrator = make_orchestrator()
    request = await _open(orchestrator)
    orchestrator.audit.log_approval_action.side_effect = RuntimeError("audit down")

    with pytest.raises(RuntimeError):
        await orchestrator.approve(request.request_id, MANAGER_1)

    assert await orchestrator.tokens.tokens_for("requester") == []
    stored = await orchestrator.get_request(request.request_id)
    assert stored.status == ApprovalStatus.PENDING_APPROVAL


# ---------------------------------------------------------------------------
# Rejection and expiry
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reject_closes_request():
    orchestrator = make_orchestrator()
    request = await _open(orchestrator)

    outcome = await orchestrator.reject(request.request_id, MANAGER_1, "Not during peak hours")

    assert outcome.result == "rejected"
    assert outcome.request.status == ApprovalStatus.REJECTED
    assert outcome.request.rejected_by == "mgr-1"
    assert outcome.request.rejection_reason == "Not during peak hours"

    after = await orchestrator.approve(request.request_id, MANAGER_2)
    assert after.errors == ["Request is rejected"]


@pytest.mark.asyncio
async def test_low_sensitivity_rejection_not_notified():
    orchestrator = make_orchestrator()
    request = await _open(orchestrator)
    await orchestrator.reject(request.request_id, MANAGER_1, "Not needed")
    assert orchestrator.notifier.notify.await_count == 1


@pytest.mark.asyncio
async def test_requester_cannot_reject():
    orchestrator = make_orchestrator()
    request = await orchestrator.create_approval_request(_alerts_body(), MANAGER_1)
    outcome = await orchestrator.reject(request.request_id, MANAGER_1, "changed my mind")
    assert outcome.result == "refused"


@pytest.mark.asyncio
async def test_stale_request_expires_on_approve():
    orchestrator = make_orchestrator()
    request = await _open(orchestrator)
    orchestrator.clock.advance(hours=73)

    outcome = await orchestrator.approve(request.request_id, MANAGER_1)

    assert outcome.result == "refused"
    assert outcome.errors == ["Approval request has expired"]
    assert (await orchestrator.get_request(request.request_id)).status == ApprovalStatus.EXPIRED


@pytest.mark.asyncio
async def test_expire_stale_requests_sweep():
    orchestrator = make_orchestrator()
    request = await _open(orchestrator)

    orchestrator.clock.advance(hours=71)
    assert await orchestrator.expire_stale_requests() == []
    assert orchestrator._locks == {}

    orchestrator.clock.advance(hours=2)
    expired = await orchestrator.expire_stale_requests()
    assert [r.request_id for r in expired] == [request.request_id]
    assert expired[0].status == ApprovalStatus.EXPIRED
    assert await orchestrator.expire_stale_requests() == []


# ---------------------------------------------------------------------------
# Token revocation
# ---------------------------------------------------------------------------


async def _approved_token(orchestrator):
    request = await _open(orchestrator)
    outcome = await orchestrator.approve(request.request_id, MANAGER_1)
    return request, outcome.token


@pytest.mark.asyncio
async def test_revoke_requires_grantor_authority():
    orchestrator = make_orchestrator()
    _, token = await _approved_token(orchestrator)

    result = await orchestrator.revoke_token(token.token_id, REQUESTER)
    assert not result.revoked
    assert result.reason == "insufficient_authority"


@pytest.mark.asyncio
async def test_revoke_token():
    orchestrator = make_orchestrator()
    request, token = await _approved_token(orchestrator)

    result = await orchestrator.revoke_token(token.token_id, MANAGER_2)
    assert result.revoked
    assert result.reason == "revoked"
    assert (await orchestrator.get_request(request.request_id)).token.revoked_at == NOW

    again = await orchestrator.revoke_token(token.token_id, MANAGER_2)
    assert again.reason == "already_revoked"


@pytest.mark.asyncio
async def test_revoke_unknown_token():
    result = await make_orchestrator().revoke_token("tok_missing", EXEC_1)
    assert not result.revoked
    assert result.reason == "token_not_found"


@pytest.mark.asyncio
async def test_issued_token_grants_and_revocation_takes_effect():
    tokens = TokenRegistry()
    orchestrator = make_orchestrator(token_registry=tokens)
    engine = make_engine(token_registry=tokens)
    _, token = await _approved_token(orchestrator)

    granted = await engine.evaluate_access(REQUESTER, Permission.CONFIGURE_ALERTS)
    assert granted.allowed
    assert "temporary_token_grant" in granted.applied_policies

    await orchestrator.revoke_token(token.token_id, EXEC_1)

    denied = await engine.evaluate_access(REQUESTER, Permission.CONFIGURE_ALERTS)
    assert not denied.allowed


@pytest.mark.asyncio
async def test_cross_region_token_carries_target_region():
    orchestrator = make_orchestrator()
    body = CreateApprovalRequestBody(
        action="cross_region_override",
        justification="Covering Cebu dispatch during the Sinulog festival",
        requested_action={
            "action": "cross_region_override",
            "source_region": "ncr-manila",
            "target_region": "cebu",
        },
    )
    request = await _open(orchestrator, body)

    outcome = await orchestrator.approve(request.request_id, MANAGER_1, mfa_verified=True)

    assert outcome.result == "approved"
    assert outcome.token.granted_regions == ("cebu",)
    assert Permission.CROSS_REGION_OVERRIDE in outcome.token.granted_permissions


# ---------------------------------------------------------------------------
# Visibility
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_requester_and_eligible_approvers_can_view():
    orchestrator = make_orchestrator()
    request = await _open(orchestrator)

    assert orchestrator.can_view(request, REQUESTER)
    assert orchestrator.can_view(request, MANAGER_1)
    assert not orchestrator.can_view(request, make_user(user_id="viewer-1", role="region_viewer"))


@pytest.mark.asyncio
async def test_sensitive_request_hidden_from_lower_approvers():
    orchestrator = make_orchestrator()
    request = await _open(orchestrator, _unmask_body())

    assert orchestrator.can_view(request, EXEC_1)
    assert not orchestrator.can_view(request, MANAGER_1)
