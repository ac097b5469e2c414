# This project was developed with assistance from AI tools.
"""Approval workflow REST endpoints."""

import logging

from fastapi import APIRouter, HTTPException, Request, status

from ..core.auth import active_assignments, role_permissions
from ..core.exceptions import ApprovalValidationError
from ..middleware.auth import MFA_CHALLENGE_HEADER, CurrentUser, mfa_verified
from ..schemas.approval import (
    ApprovalOutcome,
    ApprovalRequest,
    ApprovalRequestTemplate,
    CreateApprovalRequestBody,
    EstimatedApprovalTime,
    NotificationSettings,
    RejectApprovalBody,
    RevocationResult,
    RiskAssessment,
    ValidationResult,
    WorkflowDefinition,
)
from ..services.approval import (
    generate_approval_request_template,
    get_approval_orchestrator,
    get_user_approvable_workflows,
)
from ..services.risk import (
    get_estimated_approval_time,
    get_workflow_notification_settings,
    get_workflow_risk_assessment,
)

logger = logging.getLogger(__name__)

router = APIRouter()

_NOT_FOUND = "Approval request not found"


def _raise_for_outcome(outcome: ApprovalOutcome) -> ApprovalOutcome:
    if outcome.result == "mfa_required":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="MFA verification required",
            headers={MFA_CHALLENGE_HEADER: outcome.mfa_challenge.challenge_id},
        )
    if outcome.result == "refused":
        if outcome.request is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_NOT_FOUND)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="; ".join(outcome.errors))
    return outcome


@router.get("/workflows", response_model=list[WorkflowDefinition])
async def list_approvable_workflows(user: CurrentUser) -> list[WorkflowDefinition]:
    """Workflows the caller may approve under any of their current roles."""
    orchestrator = get_approval_orchestrator()
    current = active_assignments(user, orchestrator.clock())
    permissions = role_permissions(current)
    seen: dict[str, WorkflowDefinition] = {}
    for assignment in current:
        for workflow in get_user_approvable_workflows(
            assignment.level, assignment.role, permissions, orchestrator.registry
        ):
            seen.setdefault(workflow.action.value, workflow)
    return list(seen.values())


@router.get("/workflows/{action}/template", response_model=ApprovalRequestTemplate)
async def get_template(action: str, _user: CurrentUser) -> ApprovalRequestTemplate:
    template = generate_approval_request_template(action, get_approval_orchestrator().registry)
    if template is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown workflow action")
    return template


@router.get("/workflows/{action}/risk", response_model=RiskAssessment)
async def get_risk(action: str, _user: CurrentUser) -> RiskAssessment:
    return get_workflow_risk_assessment(action, get_approval_orchestrator().registry)


@router.get("/workflows/{action}/notifications", response_model=NotificationSettings)
async def get_notifications(action: str, _user: CurrentUser) -> NotificationSettings:
    return get_workflow_notification_settings(action, get_approval_orchestrator().registry)


@router.get("/workflows/{action}/estimate", response_model=EstimatedApprovalTime)
async def get_estimate(action: str, _user: CurrentUser) -> EstimatedApprovalTime:
    return EstimatedApprovalTime(
        action=action,
        estimated_time=get_estimated_approval_time(action, get_approval_orchestrator().registry),
    )


@router.post("", response_model=ApprovalRequest, status_code=status.HTTP_201_CREATED)
async def create_request(body: CreateApprovalRequestBody, user: CurrentUser) -> ApprovalRequest:
    """Open an approval request. Invalid bodies come back as itemized 422 errors."""
    result = await get_approval_orchestrator().create_approval_request(body, user)
    if isinstance(result, ValidationResult):
        raise ApprovalValidationError(result.errors)
    return result


@router.post("/{request_id}/approve", response_model=ApprovalOutcome)
async def approve_request(request_id: str, request: Request, user: CurrentUser) -> ApprovalOutcome:
    outcome = await get_approval_orchestrator().approve(
        request_id, user, mfa_verified=mfa_verified(request)
    )
    return _raise_for_outcome(outcome)


@router.post("/{request_id}/reject", response_model=ApprovalOutcome)
async def reject_request(
    request_id: str, body: RejectApprovalBody, user: CurrentUser
) -> ApprovalOutcome:
    outcome = await get_approval_orchestrator().reject(request_id, user, body.reason)
    return _raise_for_outcome(outcome)


@router.get("/{request_id}", response_model=ApprovalRequest)
async def get_request(request_id: str, user: CurrentUser) -> ApprovalRequest:
    """Requesters and eligible approvers only; anyone else gets the same 404 as a missing id."""
    orchestrator = get_approval_orchestrator()
    found = await orchestrator.get_request(request_id)
    if found is None or not orchestrator.can_view(found, user):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_NOT_FOUND)
    return found


@router.delete("/tokens/{token_id}", response_model=RevocationResult)
async def revoke_token(token_id: str, user: CurrentUser) -> RevocationResult:
    result = await get_approval_orchestrator().revoke_token(token_id, user)
    if result.reason == "token_not_found":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Token not found")
    if not result.revoked:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=result.reason)
    return result
