# This project was developed with assistance from AI tools.
"""Approval Workflow Orchestrator.

Users request time-boxed elevated access for one of the registered workflow
actions. A request moves through

    draft -> validated -> pending_approval -> approved | rejected | expired

and, once enough distinct eligible approvers sign off, exactly one
``TemporaryAccessToken`` is issued to the requester. Approve and reject
calls for the same request are serialized by a per-request lock so two
concurrent final approvals cannot mint two tokens.

Validation failures and refused approvals are returned as data
(``ValidationResult`` / ``ApprovalOutcome``), never raised.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from xpress_db.enums import ApprovalStatus, Permission, Role

from ..core.auth import (
    active_assignments,
    highest_level,
    parse_permissions,
    parse_role,
    role_permissions,
)
from ..core.config import settings
from ..schemas.approval import (
    Approval,
    ApprovalOutcome,
    ApprovalRequest,
    ApprovalRequestTemplate,
    ApprovalTransition,
    CreateApprovalRequestBody,
    RevocationResult,
    ValidationResult,
    WorkflowDefinition,
)
from ..schemas.auth import RoleAssignment, TemporaryAccessToken, User
from .audit import AuditLogger, build_audit_logger
from .mfa import MFAService, get_mfa_service
from .notification import NotificationDispatcher
from .policy_registry import PolicyRegistry, get_policy_registry
from .risk import get_workflow_notification_settings
from .tokens import TokenRegistry, get_token_registry

logger = logging.getLogger(__name__)

JUSTIFICATION_MIN = 10
JUSTIFICATION_MAX = 1000

MANAGE_USERS_OPERATIONS = ("create", "update", "deactivate")
MANAGE_API_KEYS_OPERATIONS = ("create", "rotate", "revoke")


# -- Eligibility -------------------------------------------------------------


def can_user_approve_workflow(
    level: int,
    role: str | Role,
    permissions: Iterable[str | Permission],
    action: str | Permission,
    registry: PolicyRegistry | None = None,
) -> bool:
    """True iff an approver with this level, role and permissions may approve ``action``.

    Wildcard holders skip the role check; everyone else needs a listed role
    and at least one of the workflow's required permissions.
    """
    registry = registry if registry is not None else get_policy_registry()
    workflow = registry.get(action)
    if workflow is None:
        return False
    if level < workflow.required_level:
        return False
    held = parse_permissions(permissions)
    if Permission.WILDCARD in held:
        return True
    parsed = parse_role(role)
    if parsed is None or parsed not in workflow.required_roles:
        return False
    return any(p in held for p in workflow.required_permissions)


def get_user_approvable_workflows(
    level: int,
    role: str | Role,
    permissions: Iterable[str | Permission],
    registry: PolicyRegistry | None = None,
) -> list[WorkflowDefinition]:
    registry = registry if registry is not None else get_policy_registry()
    permissions = list(permissions)
    return [
        w
        for w in registry.definitions()
        if can_user_approve_workflow(level, role, permissions, w.action, registry)
    ]


def eligible_assignment(
    approver: User,
    workflow: WorkflowDefinition,
    now: datetime,
    registry: PolicyRegistry | None = None,
) -> RoleAssignment | None:
    """The approver's highest-level current assignment that may approve ``workflow``."""
    current = active_assignments(approver, now)
    permissions = role_permissions(current)
    eligible = [
        a
        for a in current
        if can_user_approve_workflow(a.level, a.role, permissions, workflow.action, registry)
    ]
    return max(eligible, key=lambda a: a.level, default=None)


# -- Request validation ------------------------------------------------------

# How each workflow's request is named in field error messages.
_REQUEST_LABELS: dict[Permission, str] = {
    Permission.UNMASK_PII_WITH_MFA: "PII unmasking requests",
    Permission.ACCESS_RAW_LOCATION_DATA: "location data requests",
    Permission.APPROVE_PAYOUT_BATCH: "payout approvals",
    Permission.CROSS_REGION_OVERRIDE: "cross-region overrides",
    Permission.ASSIGN_ROLES: "role assignment",
    Permission.REVOKE_ACCESS: "access revocation",
    Permission.EXPORT_AUDIT_DATA: "audit exports",
    Permission.CONFIGURE_PRELAUNCH_PRICING_FLAGGED: "prelaunch pricing changes",
    Permission.PROMOTE_REGION_STAGE: "stage promotion",
}

_OPERATIONS: dict[Permission, tuple[str, ...]] = {
    Permission.MANAGE_USERS: MANAGE_USERS_OPERATIONS,
    Permission.MANAGE_API_KEYS: MANAGE_API_KEYS_OPERATIONS,
}

_LIST_FIELDS = frozenset({"user_ids"})


def _check_amount(value: Any, workflow: WorkflowDefinition) -> str | None:
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        return "amount must be a positive number"
    return None


def _check_operation(value: Any, workflow: WorkflowDefinition) -> str | None:
    allowed = _OPERATIONS.get(workflow.action, ())
    if value not in allowed:
        return f"operation must be one of: {', '.join(allowed)}"
    return None


def _check_role(value: Any, workflow: WorkflowDefinition) -> str | None:
    if not isinstance(value, str) or parse_role(value) is None:
        return "role must be a valid role"
    return None


# Fields whose value has a shape beyond "non-empty string".
_VALUE_RULES: dict[str, Callable[[Any, WorkflowDefinition], str | None]] = {
    "amount": _check_amount,
    "operation": _check_operation,
    "role": _check_role,
}


def _field_errors(payload: dict[str, Any], workflow: WorkflowDefinition) -> list[str]:
    """Check the workflow's ``required_fields`` in ``requested_action``."""
    label = _REQUEST_LABELS.get(workflow.action, workflow.display_name)
    errors = []
    for field in workflow.required_fields:
        value = payload.get(field)
        rule = _VALUE_RULES.get(field)
        if rule is not None:
            error = rule(value, workflow)
        elif field in _LIST_FIELDS:
            present = isinstance(value, list) and bool(value)
            error = None if present else f"{field} array is required for {label}"
        else:
            present = isinstance(value, str) and bool(value.strip())
            error = None if present else f"{field} is required for {label}"
        if error is not None:
            errors.append(error)
    return errors


def validate_approval_request(
    body: CreateApprovalRequestBody, workflow: WorkflowDefinition
) -> ValidationResult:
    """Check a request body against its workflow. Never raises."""
    errors: list[str] = []
    action = workflow.action.value

    if body.action != action:
        errors.append(f"Request action does not match workflow {action}")

    justification = (body.justification or "").strip()
    if len(justification) < JUSTIFICATION_MIN:
        errors.append(f"Justification must be at least {JUSTIFICATION_MIN} characters")
    elif len(justification) > JUSTIFICATION_MAX:
        errors.append(f"Justification cannot exceed {JUSTIFICATION_MAX} characters")

    if body.ttl_hours is not None:
        if body.ttl_hours <= 0:
            errors.append("TTL must be a positive number of hours")
        elif body.ttl_hours > workflow.max_ttl_hours:
            errors.append(f"TTL cannot exceed {workflow.max_ttl_hours:g} hours for {action}")

    payload = body.requested_action
    if not isinstance(payload, dict):
        errors.append("requested_action must be an object")
    elif not payload:
        errors.append("requested_action cannot be empty")
    else:
        if payload.get("action") != action:
            errors.append("requested_action.action must match the request action")
        errors.extend(_field_errors(payload, workflow))

    return ValidationResult(valid=not errors, errors=errors)


# -- Templates ---------------------------------------------------------------

_PLACEHOLDERS: dict[str, Any] = {
    "user_ids": ["<user_id>"],
    "investigation_case": "<case_id>",
    "amount": 0,
    "target_user_id": "<user_id>",
    "target_stage": "<stage>",
    "date_from": "<YYYY-MM-DD>",
    "date_to": "<YYYY-MM-DD>",
}


def _placeholder(field: str, workflow: WorkflowDefinition) -> Any:
    allowed = _OPERATIONS.get(workflow.action)
    if field == "operation" and allowed:
        return allowed[0]
    return _PLACEHOLDERS.get(field, f"<{field}>")


def generate_approval_request_template(
    action: str | Permission, registry: PolicyRegistry | None = None
) -> ApprovalRequestTemplate | None:
    """Skeleton request for ``action`` with every required field pre-filled."""
    registry = registry if registry is not None else get_policy_registry()
    workflow = registry.get(action)
    if workflow is None:
        return None
    fields = {f: _placeholder(f, workflow) for f in workflow.required_fields}
    return ApprovalRequestTemplate(
        action=workflow.action,
        justification=f"Describe why {workflow.display_name} access is needed",
        requested_action={"action": workflow.action.value, **fields},
        ttl_hours=workflow.default_ttl_seconds / 3600,
    )


# -- Storage -----------------------------------------------------------------


class ApprovalStore:
    """In-memory keyed store. Reads and writes copy so callers never share state."""

    def __init__(self):
        self._requests: dict[str, ApprovalRequest] = {}

    async def get(self, request_id: str) -> ApprovalRequest | None:
        request = self._requests.get(request_id)
        return request.model_copy(deep=True) if request is not None else None

    async def save(self, request: ApprovalRequest) -> None:
        self._requests[request.request_id] = request.model_copy(deep=True)

    async def list_by_status(self, status: ApprovalStatus) -> list[ApprovalRequest]:
        return [r.model_copy(deep=True) for r in self._requests.values() if r.status == status]

    async def find_by_token(self, token_id: str) -> ApprovalRequest | None:
        for request in self._requests.values():
            if request.token is not None and request.token.token_id == token_id:
                return request.model_copy(deep=True)
        return None


# -- Orchestrator ------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _transition(
    request: ApprovalRequest, to_status: ApprovalStatus, now: datetime, actor_id: str | None
) -> None:
    allowed = ApprovalStatus.valid_transitions()[request.status]
    if to_status not in allowed:
        raise ValueError(f"Illegal approval transition {request.status.value} -> {to_status.value}")
    request.history.append(
        ApprovalTransition(from_status=request.status, to_status=to_status, at=now, actor_id=actor_id)
    )
    request.status = to_status
    request.updated_at = now


def _granted_regions(payload: dict[str, Any]) -> tuple[str, ...]:
    regions: list[str] = []
    for field in ("region", "target_region"):
        value = payload.get(field)
        if isinstance(value, str) and value:
            regions.append(value)
    extra = payload.get("regions")
    if isinstance(extra, list):
        regions.extend(r for r in extra if isinstance(r, str) and r)
    return tuple(dict.fromkeys(regions))


def _refused(*errors: str, request: ApprovalRequest | None = None) -> ApprovalOutcome:
    return ApprovalOutcome(result="refused", request=request, errors=list(errors))


class ApprovalOrchestrator:
    """Drives approval requests through their lifecycle."""

    def __init__(
        self,
        *,
        registry: PolicyRegistry | None = None,
        store: ApprovalStore | None = None,
        token_registry: TokenRegistry | None = None,
        audit_logger: AuditLogger | None = None,
        notifier: NotificationDispatcher | None = None,
        mfa_service: MFAService | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.registry = registry if registry is not None else get_policy_registry()
        self.store = store if store is not None else ApprovalStore()
        self.tokens = token_registry if token_registry is not None else get_token_registry()
        self.audit = audit_logger if audit_logger is not None else build_audit_logger()
        self.notifier = notifier if notifier is not None else NotificationDispatcher()
        self.mfa = mfa_service if mfa_service is not None else get_mfa_service()
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, request_id: str) -> asyncio.Lock:
        lock = self._locks.get(request_id)
        if lock is None:
            lock = self._locks[request_id] = asyncio.Lock()
        return lock

    def _release_lock(self, request_id: str) -> None:
        # Terminal requests never change again, so later callers need no lock.
        self._locks.pop(request_id, None)

    def _is_stale(self, request: ApprovalRequest, now: datetime) -> bool:
        return now - request.created_at >= timedelta(hours=settings.APPROVAL_REQUEST_EXPIRY_HOURS)

    async def _notify(self, workflow: WorkflowDefinition, template_id: str, request: ApprovalRequest) -> None:
        notification = get_workflow_notification_settings(workflow.action, self.registry)
        enabled = {
            "approval_requested": notification.notify_on_request,
            "approval_granted": notification.notify_on_approval,
            "approval_rejected": notification.notify_on_rejection,
        }[template_id]
        if not enabled:
            return
        await self.notifier.notify(
            notification,
            template_id,
            {
                "request_id": request.request_id,
                "action": request.action.value,
                "requester_id": request.requester_id,
                "status": request.status.value,
            },
        )

    async def _expire(self, request: ApprovalRequest, now: datetime) -> ApprovalRequest:
        _transition(request, ApprovalStatus.EXPIRED, now, None)
        await self.audit.log_approval_action("expired", request, None)
        await self.store.save(request)
        logger.info("Approval request %s expired", request.request_id)
        self._release_lock(request.request_id)
        return request

    async def create_approval_request(
        self, body: CreateApprovalRequestBody, requester: User
    ) -> ApprovalRequest | ValidationResult:
        """Validate and open a request. Returns the validation errors on failure."""
        workflow = self.registry.get(body.action)
        if workflow is None:
            return ValidationResult(valid=False, errors=[f"Unknown workflow action: {body.action}"])

        validation = validate_approval_request(body, workflow)
        if not validation.valid:
            logger.info(
                "Approval request from %s for %s rejected: %s",
                requester.user_id,
                workflow.action.value,
                "; ".join(validation.errors),
            )
            return validation

        now = self.clock()
        request = ApprovalRequest(
            request_id=f"apr_{uuid.uuid4().hex}",
            action=workflow.action,
            justification=body.justification.strip(),
            requested_action=dict(body.requested_action),
            ttl_hours=body.ttl_hours,
            requester_id=requester.user_id,
            required_approvals=workflow.required_approvals,
            created_at=now,
            updated_at=now,
            history=[
                ApprovalTransition(
                    from_status=None,
                    to_status=ApprovalStatus.DRAFT,
                    at=now,
                    actor_id=requester.user_id,
                )
            ],
        )
        _transition(request, ApprovalStatus.VALIDATED, now, requester.user_id)
        _transition(request, ApprovalStatus.PENDING_APPROVAL, now, requester.user_id)

        await self.audit.log_approval_action("created", request, requester.user_id)
        await self.store.save(request)
        await self._notify(workflow, "approval_requested", request)
        logger.info(
            "Approval request %s opened by %s for %s",
            request.request_id,
            requester.user_id,
            workflow.action.value,
        )
        return request

    def _issue_token(
        self, request: ApprovalRequest, workflow: WorkflowDefinition, now: datetime
    ) -> TemporaryAccessToken:
        if request.ttl_hours is None:
            ttl_seconds = float(workflow.default_ttl_seconds)
        else:
            ttl_seconds = request.ttl_hours * 3600
        ttl_seconds = min(ttl_seconds, workflow.max_ttl_seconds)
        return TemporaryAccessToken(
            token_id=f"tok_{uuid.uuid4().hex}",
            workflow_action=workflow.action,
            granted_permissions=workflow.auto_grant_permissions,
            granted_regions=_granted_regions(request.requested_action),
            expires_at=now + timedelta(seconds=ttl_seconds),
            issued_at=now,
            requester_id=request.requester_id,
            justification=request.justification,
            granted_by=tuple(a.approver_id for a in request.approvals),
            grantor_level=max(a.level for a in request.approvals),
        )

    async def approve(
        self, request_id: str, approver: User, *, mfa_verified: bool = False
    ) -> ApprovalOutcome:
        async with self._lock_for(request_id):
            request = await self.store.get(request_id)
            if request is None:
                return _refused("Approval request not found")
            now = self.clock()

            if request.status != ApprovalStatus.PENDING_APPROVAL:
                if approver.user_id in request.approver_ids():
                    return ApprovalOutcome(
                        result="already_recorded", request=request, token=request.token
                    )
                return _refused(f"Request is {request.status.value}", request=request)

            if self._is_stale(request, now):
                request = await self._expire(request, now)
                return _refused("Approval request has expired", request=request)

            if approver.user_id == request.requester_id:
                logger.warning("Self-approval refused for %s on %s", approver.user_id, request_id)
                return _refused("Requesters cannot approve their own requests", request=request)

            if approver.user_id in request.approver_ids():
                return ApprovalOutcome(result="already_recorded", request=request)

            workflow = self.registry.require(request.action)
            assignment = eligible_assignment(approver, workflow, now, self.registry)
            if assignment is None:
                logger.warning(
                    "Ineligible approver %s for %s (%s)",
                    approver.user_id,
                    request_id,
                    workflow.action.value,
                )
                return _refused(
                    f"Approver is not eligible for {workflow.action.value}", request=request
                )

            if workflow.mfa_required_for_approval and not mfa_verified:
                challenge = await self.mfa.create_challenge(
                    approver.user_id,
                    context={"request_id": request_id, "action": workflow.action.value},
                )
                return ApprovalOutcome(result="mfa_required", request=request, mfa_challenge=challenge)

            request.approvals.append(
                Approval(
                    approver_id=approver.user_id,
                    role=assignment.role,
                    level=assignment.level,
                    approved_at=now,
                    mfa_verified=mfa_verified,
                )
            )
            request.updated_at = now

            if len(request.approver_ids()) < request.required_approvals:
                await self.audit.log_approval_action("approval_recorded", request, approver.user_id)
                await self.store.save(request)
                logger.info(
                    "Approval %d/%d recorded on %s by %s",
                    len(request.approvals),
                    request.required_approvals,
                    request_id,
                    approver.user_id,
                )
                return ApprovalOutcome(result="recorded", request=request)

            _transition(request, ApprovalStatus.APPROVED, now, approver.user_id)
            token = self._issue_token(request, workflow, now)
            request.token = token
            await self.audit.log_approval_action("approved", request, approver.user_id)
            await self.tokens.register(token)
            await self.store.save(request)
            self._release_lock(request_id)
            await self._notify(workflow, "approval_granted", request)
            return ApprovalOutcome(result="approved", request=request, token=token)

    async def reject(self, request_id: str, approver: User, reason: str) -> ApprovalOutcome:
        async with self._lock_for(request_id):
            request = await self.store.get(request_id)
            if request is None:
                return _refused("Approval request not found")
            now = self.clock()

            if request.status != ApprovalStatus.PENDING_APPROVAL:
                return _refused(f"Request is {request.status.value}", request=request)
            if self._is_stale(request, now):
                request = await self._expire(request, now)
                return _refused("Approval request has expired", request=request)

            workflow = self.registry.require(request.action)
            if approver.user_id == request.requester_id or (
                eligible_assignment(approver, workflow, now, self.registry) is None
            ):
                return _refused(
                    f"Approver is not eligible for {workflow.action.value}", request=request
                )

            request.rejected_by = approver.user_id
            request.rejection_reason = reason
            _transition(request, ApprovalStatus.REJECTED, now, approver.user_id)
            await self.audit.log_approval_action("rejected", request, approver.user_id)
            await self.store.save(request)
            self._release_lock(request_id)
            await self._notify(workflow, "approval_rejected", request)
            logger.info("Approval request %s rejected by %s", request_id, approver.user_id)
            return ApprovalOutcome(result="rejected", request=request)

    async def expire_stale_requests(self, now: datetime | None = None) -> list[ApprovalRequest]:
        """Move pending requests past the expiry window to expired."""
        now = now or self.clock()
        expired = []
        for pending in await self.store.list_by_status(ApprovalStatus.PENDING_APPROVAL):
            if not self._is_stale(pending, now):
                continue
            async with self._lock_for(pending.request_id):
                request = await self.store.get(pending.request_id)
                if request is None or request.status != ApprovalStatus.PENDING_APPROVAL:
                    continue
                expired.append(await self._expire(request, now))
        return expired

    async def revoke_token(self, token_id: str, actor: User) -> RevocationResult:
        """Revoke a token. The actor needs authority at least equal to the grantor's."""
        token = await self.tokens.get(token_id)
        if token is None:
            return RevocationResult(revoked=False, reason="token_not_found")
        if token.revoked_at is not None:
            return RevocationResult(revoked=True, reason="already_revoked")

        now = self.clock()
        level = highest_level(actor, now)
        if level < token.grantor_level:
            logger.warning(
                "Token revocation refused: %s (level %d) < grantor level %d",
                actor.user_id,
                level,
                token.grantor_level,
            )
            return RevocationResult(revoked=False, reason="insufficient_authority")

        revoked = await self.tokens.revoke(token_id, now)
        request = await self.store.find_by_token(token_id)
        if request is not None:
            request.token = revoked
            await self.store.save(request)
            await self.audit.log_approval_action("token_revoked", request, actor.user_id)
        logger.info("Token %s revoked by %s", token_id, actor.user_id)
        return RevocationResult(revoked=True, reason="revoked")

    async def get_request(self, request_id: str) -> ApprovalRequest | None:
        return await self.store.get(request_id)

    def can_view(self, request: ApprovalRequest, user: User) -> bool:
        """Requesters see their own requests; otherwise only eligible approvers do."""
        if user.user_id == request.requester_id:
            return True
        workflow = self.registry.get(request.action)
        if workflow is None:
            return False
        return eligible_assignment(user, workflow, self.clock(), self.registry) is not None


_orchestrator: ApprovalOrchestrator | None = None


def get_approval_orchestrator() -> ApprovalOrchestrator:
    """Return the process-wide orchestrator, building it on first use."""
    global _orchestrator  # noqa: PLW0603
    if _orchestrator is None:
        _orchestrator = ApprovalOrchestrator()
    return _orchestrator
