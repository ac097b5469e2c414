# This project was developed with assistance from AI tools.
"""Access decision request/response schemas."""

from datetime import datetime
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from xpress_db.enums import DataClass, OwnershipAccessLevel, OwnershipType, Permission

from . import UTCDateTime


class AccessContext(BaseModel):
    """Attributes of the resource and request that ABAC rules evaluate."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    region_id: str | None = None
    ownership_type: OwnershipType | None = None
    data_class: DataClass = DataClass.INTERNAL
    contains_pii: bool = False
    resource_id: str | None = None

    # Cross-region support investigations
    case_id: str | None = None

    # Break-glass access
    emergency_override: bool = False
    emergency_case_id: str | None = None
    emergency_granted_at: UTCDateTime | None = None
    emergency_access_duration: Literal["standard", "extended"] | None = None

    # MFA state; skip_mfa is only ever set by a bypass attempt
    skip_mfa: bool = Field(
        default=False,
        validation_alias=AliasChoices("skip_mfa", "skipMFA", "skipMfa"),
    )
    mfa_verified: bool = False

    # Region hierarchy supplied by the caller (parent -> children)
    region_hierarchy: dict[str, tuple[str, ...]] = Field(default_factory=dict)
    region_inheritance_depth: int | None = Field(default=None, ge=0)


class AccessCondition(BaseModel):
    """Obligation attached to a granted decision."""

    type: Literal["time_limited", "supervisor_approval"]
    description: str
    expires_at: datetime | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class AccessDecision(BaseModel):
    """Allow/deny outcome plus the obligations the caller must honor."""

    allowed: bool
    reason: str
    user_id: str
    permission: Permission
    applied_policies: list[str] = Field(default_factory=list)
    requires_mfa: bool = False
    mfa_reasons: list[str] = Field(default_factory=list)
    masked_fields: list[str] = Field(default_factory=list)
    ownership_access_level: OwnershipAccessLevel = OwnershipAccessLevel.NONE
    conditions: list[AccessCondition] = Field(default_factory=list)
    audit_required: bool = True
    decision_id: str
    evaluated_at: datetime
    cache_hit: bool = False


class EvaluateAccessRequest(BaseModel):
    """Body of ``POST /api/access/evaluate``."""

    permission: Permission
    context: AccessContext = Field(default_factory=AccessContext)


class PermissionValidation(BaseModel):
    valid: bool
    missing_permissions: list[Permission] = Field(default_factory=list)


class ValidatePermissionsRequest(BaseModel):
    permissions: list[Permission]


class VehiclePermissionsResponse(BaseModel):
    user_id: str
    permissions: list[Permission]
