# This project was developed with assistance from AI tools.
"""Risk and audit advisory for workflows and access decisions.

Everything here is a pure function of a workflow definition (looked up in
the Policy Registry) or an access context. Unknown actions get conservative
defaults rather than errors so that the advisory endpoints never fail.
"""

import logging
from collections.abc import Mapping

from xpress_db.enums import (
    DataClass,
    NotificationChannel,
    Permission,
    PIIScope,
    SensitivityLevel,
)

from ..schemas.access import AccessContext
from ..schemas.approval import NotificationSettings, RiskAssessment, WorkflowDefinition
from .policy_registry import PolicyRegistry, get_policy_registry

logger = logging.getLogger(__name__)

FINANCIAL_PERMISSIONS = frozenset({
    Permission.APPROVE_VEHICLE_PURCHASES,
    Permission.MANAGE_VEHICLE_FINANCING,
    Permission.PROCESS_VEHICLE_INSURANCE_CLAIMS,
    Permission.APPROVE_STRATEGIC_VEHICLE_INVESTMENTS,
    Permission.APPROVE_PAYOUT_BATCH,
})

DECOMMISSIONING_PERMISSIONS = frozenset({Permission.APPROVE_VEHICLE_DECOMMISSIONING})

# Per-action risk factors on top of the sensitivity-derived ones
_ACTION_RISK_FACTORS: dict[Permission, tuple[str, ...]] = {
    Permission.UNMASK_PII_WITH_MFA: ("Exposure of unmasked personal data",),
    Permission.ACCESS_RAW_LOCATION_DATA: ("Exposure of precise location history",),
    Permission.APPROVE_PAYOUT_BATCH: ("Irreversible movement of funds",),
    Permission.CROSS_REGION_OVERRIDE: ("Access outside assigned region",),
    Permission.ASSIGN_ROLES: ("Privilege escalation",),
    Permission.MANAGE_API_KEYS: ("Long-lived machine credentials",),
    Permission.EXPORT_AUDIT_DATA: ("Bulk export of audit records",),
    Permission.PROMOTE_REGION_STAGE: ("Region launch state change",),
}

_SENSITIVITY_RISK_FACTORS: dict[SensitivityLevel, tuple[str, ...]] = {
    SensitivityLevel.CRITICAL: (
        "Access to highly sensitive data or funds",
        "Regulatory exposure if misused",
    ),
    SensitivityLevel.HIGH: ("Elevated privileges",),
    SensitivityLevel.MEDIUM: (),
    SensitivityLevel.LOW: (),
}

_ESTIMATED_TIMES: dict[tuple[SensitivityLevel, bool], str] = {
    (SensitivityLevel.CRITICAL, True): "8-12 hours",
    (SensitivityLevel.CRITICAL, False): "4-8 hours",
    (SensitivityLevel.HIGH, True): "4-8 hours",
    (SensitivityLevel.HIGH, False): "2-4 hours",
    (SensitivityLevel.MEDIUM, True): "2-6 hours",
    (SensitivityLevel.MEDIUM, False): "1-3 hours",
    (SensitivityLevel.LOW, True): "2-4 hours",
    (SensitivityLevel.LOW, False): "1-2 hours",
}

_ALL_CHANNELS = [NotificationChannel.EMAIL, NotificationChannel.SMS, NotificationChannel.SLACK]


def _lookup(action, registry: PolicyRegistry | None) -> WorkflowDefinition | None:
    registry = registry if registry is not None else get_policy_registry()
    return registry.get(action)


def get_workflow_risk_assessment(
    action: str | Permission, registry: PolicyRegistry | None = None
) -> RiskAssessment:
    workflow = _lookup(action, registry)
    if workflow is None:
        return RiskAssessment(
            risk_level=SensitivityLevel.MEDIUM.value,
            risk_factors=["Unknown workflow"],
            mitigation_measures=["Verify workflow definition"],
        )

    factors = list(_SENSITIVITY_RISK_FACTORS[workflow.sensitivity_level])
    factors.extend(_ACTION_RISK_FACTORS.get(workflow.action, ()))

    mitigations = [f"Access limited to {workflow.max_ttl_seconds // 60} minutes maximum"]
    if workflow.dual_approval_required:
        mitigations.append("Dual approval required")
    if workflow.mfa_required_for_approval:
        mitigations.append("MFA verification mandatory")
    if workflow.sensitivity_level in (SensitivityLevel.HIGH, SensitivityLevel.CRITICAL):
        mitigations.append("Enhanced audit logging")

    if not factors:
        factors.append("Routine operational change")

    return RiskAssessment(
        risk_level=workflow.sensitivity_level.value,
        risk_factors=factors,
        mitigation_measures=mitigations,
    )


def get_workflow_notification_settings(
    action: str | Permission, registry: PolicyRegistry | None = None
) -> NotificationSettings:
    workflow = _lookup(action, registry)
    if workflow is None:
        return NotificationSettings()

    level = workflow.sensitivity_level
    if level in (SensitivityLevel.CRITICAL, SensitivityLevel.HIGH):
        return NotificationSettings(escalation_hours=2, notification_channels=list(_ALL_CHANNELS))
    if level == SensitivityLevel.MEDIUM:
        return NotificationSettings(
            escalation_hours=4,
            notification_channels=[NotificationChannel.EMAIL, NotificationChannel.SLACK],
        )
    return NotificationSettings(
        notify_on_rejection=False,
        escalation_hours=8,
        notification_channels=[NotificationChannel.EMAIL],
    )


def get_estimated_approval_time(
    action: str | Permission, registry: PolicyRegistry | None = None
) -> str:
    workflow = _lookup(action, registry)
    if workflow is None:
        return "unknown"
    return _ESTIMATED_TIMES[(workflow.sensitivity_level, workflow.dual_approval_required)]


def requires_mfa(
    permission: Permission,
    context: AccessContext,
    *,
    cross_region_override: bool = False,
    pii_scope: PIIScope | None = None,
) -> list[str]:
    """Reasons this access needs a second factor. Empty list means none."""
    reasons = []
    if (
        context.contains_pii
        and pii_scope == PIIScope.FULL
        and context.data_class in (DataClass.CONFIDENTIAL, DataClass.RESTRICTED)
    ):
        reasons.append("full_pii_access")
    if context.data_class == DataClass.RESTRICTED:
        reasons.append("restricted_data_class")
    if permission in FINANCIAL_PERMISSIONS:
        reasons.append("financial_permission")
    if permission in DECOMMISSIONING_PERMISSIONS:
        reasons.append("decommissioning_permission")
    if cross_region_override or permission == Permission.CROSS_REGION_OVERRIDE:
        reasons.append("cross_region_override")
    if context.emergency_override and context.emergency_access_duration == "extended":
        reasons.append("emergency_extended_access")
    return reasons


def requires_enhanced_audit(
    permission: Permission,
    context: AccessContext,
    registry: PolicyRegistry | None = None,
) -> bool:
    """Sensitive actions get a richer audit record on top of the standard one."""
    if context.contains_pii or context.emergency_override:
        return True
    if context.data_class in (DataClass.CONFIDENTIAL, DataClass.RESTRICTED):
        return True
    if permission in FINANCIAL_PERMISSIONS or permission in DECOMMISSIONING_PERMISSIONS:
        return True
    workflow = _lookup(permission, registry)
    return workflow is not None and workflow.sensitivity_level in (
        SensitivityLevel.HIGH,
        SensitivityLevel.CRITICAL,
    )


# -- Field masking ----------------------------------------------------------

PERSONAL_FIELDS = ("owner_contact", "driver_personal_info", "driver_phone")
IDENTIFIER_FIELDS = ("vin", "engine_number", "registration_number")
FINANCIAL_FIELDS = (
    "acquisition_cost",
    "current_market_value",
    "insurance_value",
    "purchase_price",
    "insurance_policy_number",
    "loan_details",
)

MaskTable = Mapping[tuple[DataClass, PIIScope], tuple[str, ...]]

DEFAULT_MASK_TABLE: MaskTable = {
    (DataClass.INTERNAL, PIIScope.NONE): PERSONAL_FIELDS,
    (DataClass.INTERNAL, PIIScope.MASKED): PERSONAL_FIELDS,
    (DataClass.CONFIDENTIAL, PIIScope.NONE): PERSONAL_FIELDS + IDENTIFIER_FIELDS + FINANCIAL_FIELDS,
    (DataClass.CONFIDENTIAL, PIIScope.MASKED): PERSONAL_FIELDS + IDENTIFIER_FIELDS,
    (DataClass.RESTRICTED, PIIScope.NONE): (
        PERSONAL_FIELDS + IDENTIFIER_FIELDS + FINANCIAL_FIELDS + ("fleet_owner_name",)
    ),
    (DataClass.RESTRICTED, PIIScope.MASKED): PERSONAL_FIELDS + IDENTIFIER_FIELDS + FINANCIAL_FIELDS,
}


def masked_fields_for(
    data_class: DataClass,
    pii_scope: PIIScope,
    table: MaskTable | None = None,
) -> list[str]:
    """Field names to replace with the mask sentinel for this caller.

    Full PII scope sees everything. Combinations missing from the table
    (public data, for instance) mask nothing.
    """
    if pii_scope == PIIScope.FULL:
        return []
    table = DEFAULT_MASK_TABLE if table is None else table
    return list(table.get((data_class, pii_scope), ()))
