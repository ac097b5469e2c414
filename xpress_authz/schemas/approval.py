# This project was developed with assistance from AI tools.
"""Approval workflow schemas: registry entries, requests, outcomes."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from xpress_db.enums import (
    ApprovalStatus,
    NotificationChannel,
    Permission,
    Role,
    SensitivityLevel,
)

from . import UTCDateTime
from .auth import TemporaryAccessToken


class WorkflowDefinition(BaseModel):
    """Policy Registry entry describing who may approve an action and for how long."""

    model_config = ConfigDict(frozen=True)

    action: Permission
    display_name: str
    description: str
    required_roles: tuple[Role, ...]
    required_permissions: tuple[Permission, ...]
    required_level: int
    sensitivity_level: SensitivityLevel
    dual_approval_required: bool
    mfa_required_for_approval: bool
    default_ttl_seconds: int
    max_ttl_seconds: int
    auto_grant_permissions: tuple[Permission, ...]
    required_fields: tuple[str, ...] = ()

    @property
    def required_approvals(self) -> int:
        return 2 if self.dual_approval_required else 1

    @property
    def max_ttl_hours(self) -> float:
        return self.max_ttl_seconds / 3600


class CreateApprovalRequestBody(BaseModel):
    """Raw request body. Types are loose on purpose: malformed payloads
    must come back as itemized validation errors, not a 422."""

    action: str
    justification: str = ""
    requested_action: Any = None
    ttl_hours: float | None = None


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


class Approval(BaseModel):
    """One approver's sign-off on a request."""

    approver_id: str
    role: Role
    level: int
    approved_at: UTCDateTime
    mfa_verified: bool = False


class ApprovalTransition(BaseModel):
    from_status: ApprovalStatus | None
    to_status: ApprovalStatus
    at: UTCDateTime
    actor_id: str | None = None


class ApprovalRequest(BaseModel):
    """A request for time-boxed elevated access and its approval state."""

    request_id: str
    action: Permission
    justification: str
    requested_action: dict[str, Any]
    ttl_hours: float | None = None
    requester_id: str
    status: ApprovalStatus = ApprovalStatus.DRAFT
    required_approvals: int = 1
    approvals: list[Approval] = Field(default_factory=list)
    history: list[ApprovalTransition] = Field(default_factory=list)
    created_at: UTCDateTime
    updated_at: UTCDateTime
    token: TemporaryAccessToken | None = None
    rejected_by: str | None = None
    rejection_reason: str | None = None

    def approver_ids(self) -> set[str]:
        return {a.approver_id for a in self.approvals}


class MFAChallenge(BaseModel):
    challenge_id: str
    user_id: str
    method: str
    created_at: datetime
    expires_at: datetime
    context: dict[str, Any] = Field(default_factory=dict)


class ApprovalOutcome(BaseModel):
    """Result of an approve/reject call. Refusals are data, not exceptions."""

    result: Literal[
        "recorded",
        "approved",
        "already_recorded",
        "rejected",
        "mfa_required",
        "refused",
    ]
    request: ApprovalRequest | None = None
    token: TemporaryAccessToken | None = None
    mfa_challenge: MFAChallenge | None = None
    errors: list[str] = Field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.result in ("recorded", "approved", "already_recorded", "rejected")


class RejectApprovalBody(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)


class RevocationResult(BaseModel):
    revoked: bool
    reason: str


class RiskAssessment(BaseModel):
    risk_level: str
    risk_factors: list[str] = Field(default_factory=list)
    mitigation_measures: list[str] = Field(default_factory=list)


class NotificationSettings(BaseModel):
    notify_on_request: bool = True
    notify_on_approval: bool = True
    notify_on_rejection: bool = True
    escalation_hours: int = 4
    notification_channels: list[NotificationChannel] = Field(
        default_factory=lambda: [NotificationChannel.EMAIL]
    )


class ApprovalRequestTemplate(BaseModel):
    action: Permission
    justification: str
    requested_action: dict[str, Any]
    ttl_hours: float


class EstimatedApprovalTime(BaseModel):
    action: str
    estimated_time: str
