# This project was developed with assistance from AI tools.
"""Policy Registry: the immutable table of approval workflow definitions.

Built once at process start by ``build_default_registry`` and injected into
the decision engine and approval orchestrator. Nothing mutates it at
runtime; the backing mapping is a ``MappingProxyType``.
"""

import logging
from collections.abc import Iterable, Iterator, Mapping
from types import MappingProxyType

from pydantic import ValidationError

from xpress_db.enums import Permission, Role, SensitivityLevel

from ..core.exceptions import ConfigurationError
from ..schemas.approval import WorkflowDefinition

logger = logging.getLogger(__name__)

_APPROVE = (Permission.APPROVE_REQUESTS,)

_DEFAULT_DEFINITIONS: tuple[dict, ...] = (
    {
        "action": Permission.CONFIGURE_ALERTS,
        "display_name": "Configure Alerts",
        "description": "Adjust operational alert thresholds for a region.",
        "required_roles": (Role.OPS_MANAGER, Role.REGIONAL_MANAGER, Role.EXECUTIVE),
        "required_permissions": _APPROVE,
        "required_level": 30,
        "sensitivity_level": SensitivityLevel.LOW,
        "dual_approval_required": False,
        "mfa_required_for_approval": False,
        "default_ttl_seconds": 3600,
        "max_ttl_seconds": 7200,
        "auto_grant_permissions": (Permission.CONFIGURE_ALERTS,),
        "required_fields": (),
    },
    {
        "action": Permission.UNMASK_PII_WITH_MFA,
        "display_name": "Unmask PII",
        "description": "Reveal personally identifiable information for an investigation.",
        "required_roles": (Role.EXECUTIVE, Role.RISK_INVESTIGATOR),
        "required_permissions": _APPROVE,
        "required_level": 35,
        "sensitivity_level": SensitivityLevel.CRITICAL,
        "dual_approval_required": True,
        "mfa_required_for_approval": True,
        "default_ttl_seconds": 1800,
        "max_ttl_seconds": 3600,
        "auto_grant_permissions": (Permission.UNMASK_PII_WITH_MFA, Permission.VIEW_EVIDENCE),
        "required_fields": ("user_ids", "investigation_case"),
    },
    {
        "action": Permission.CROSS_REGION_OVERRIDE,
        "display_name": "Cross-Region Override",
        "description": "Temporarily act in a region outside the requester's assignment.",
        "required_roles": (Role.REGIONAL_MANAGER, Role.EXECUTIVE, Role.RISK_INVESTIGATOR),
        "required_permissions": (Permission.APPROVE_REQUESTS, Permission.APPROVE_TEMP_ACCESS_REGION),
        "required_level": 35,
        "sensitivity_level": SensitivityLevel.HIGH,
        "dual_approval_required": False,
        "mfa_required_for_approval": True,
        "default_ttl_seconds": 3600,
        "max_ttl_seconds": 14400,
        "auto_grant_permissions": (Permission.CROSS_REGION_OVERRIDE,),
        "required_fields": ("source_region", "target_region"),
    },
    {
        "action": Permission.APPROVE_PAYOUT_BATCH,
        "display_name": "Approve Payout Batch",
        "description": "Release a driver payout batch for settlement.",
        "required_roles": (Role.EXECUTIVE, Role.FINANCE_OPS),
        "required_permissions": _APPROVE,
        "required_level": 40,
        "sensitivity_level": SensitivityLevel.CRITICAL,
        "dual_approval_required": True,
        "mfa_required_for_approval": True,
        "default_ttl_seconds": 1800,
        "max_ttl_seconds": 3600,
        "auto_grant_permissions": (Permission.APPROVE_PAYOUT_BATCH,),
        "required_fields": ("batch_id", "amount", "region"),
    },
    {
        "action": Permission.MANAGE_USERS,
        "display_name": "Manage Users",
        "description": "Create, update or deactivate console user accounts.",
        "required_roles": (Role.IAM_ADMIN, Role.REGIONAL_MANAGER, Role.EXECUTIVE),
        "required_permissions": (Permission.APPROVE_REQUESTS, Permission.MANAGE_USERS),
        "required_level": 40,
        "sensitivity_level": SensitivityLevel.MEDIUM,
        "dual_approval_required": False,
        "mfa_required_for_approval": False,
        "default_ttl_seconds": 3600,
        "max_ttl_seconds": 28800,
        "auto_grant_permissions": (Permission.MANAGE_USERS,),
        "required_fields": ("operation",),
    },
    {
        "action": Permission.ASSIGN_ROLES,
        "display_name": "Assign Roles",
        "description": "Grant a role to a console user.",
        "required_roles": (Role.EXECUTIVE, Role.REGIONAL_MANAGER),
        "required_permissions": _APPROVE,
        "required_level": 40,
        "sensitivity_level": SensitivityLevel.HIGH,
        "dual_approval_required": False,
        "mfa_required_for_approval": True,
        "default_ttl_seconds": 3600,
        "max_ttl_seconds": 14400,
        "auto_grant_permissions": (Permission.ASSIGN_ROLES,),
        "required_fields": ("target_user_id", "role"),
    },
    {
        "action": Permission.REVOKE_ACCESS,
        "display_name": "Revoke Access",
        "description": "Remove a user's roles or outstanding temporary grants.",
        "required_roles": (Role.IAM_ADMIN, Role.EXECUTIVE, Role.REGIONAL_MANAGER),
        "required_permissions": _APPROVE,
        "required_level": 40,
        "sensitivity_level": SensitivityLevel.MEDIUM,
        "dual_approval_required": False,
        "mfa_required_for_approval": False,
        "default_ttl_seconds": 1800,
        "max_ttl_seconds": 7200,
        "auto_grant_permissions": (Permission.REVOKE_ACCESS,),
        "required_fields": ("target_user_id",),
    },
    {
        "action": Permission.MANAGE_API_KEYS,
        "display_name": "Manage API Keys",
        "description": "Create, rotate or revoke partner API keys.",
        "required_roles": (Role.APP_ADMIN, Role.IAM_ADMIN, Role.EXECUTIVE),
        "required_permissions": _APPROVE,
        "required_level": 60,
        "sensitivity_level": SensitivityLevel.HIGH,
        "dual_approval_required": False,
        "mfa_required_for_approval": True,
        "default_ttl_seconds": 1800,
        "max_ttl_seconds": 7200,
        "auto_grant_permissions": (Permission.MANAGE_API_KEYS,),
        "required_fields": ("operation",),
    },
    {
        "action": Permission.EXPORT_AUDIT_DATA,
        "display_name": "Export Audit Data",
        "description": "Export audit trail records for an external review.",
        "required_roles": (Role.AUDITOR, Role.EXECUTIVE),
        "required_permissions": _APPROVE,
        "required_level": 50,
        "sensitivity_level": SensitivityLevel.HIGH,
        "dual_approval_required": False,
        "mfa_required_for_approval": True,
        "default_ttl_seconds": 3600,
        "max_ttl_seconds": 14400,
        "auto_grant_permissions": (Permission.EXPORT_AUDIT_DATA, Permission.READ_ALL_AUDIT_LOGS),
        "required_fields": ("date_from", "date_to"),
    },
    {
        "action": Permission.ACCESS_RAW_LOCATION_DATA,
        "display_name": "Access Raw Location Data",
        "description": "Read unaggregated GPS traces for specific users.",
        "required_roles": (Role.EXECUTIVE, Role.RISK_INVESTIGATOR),
        "required_permissions": _APPROVE,
        "required_level": 35,
        "sensitivity_level": SensitivityLevel.CRITICAL,
        "dual_approval_required": True,
        "mfa_required_for_approval": True,
        "default_ttl_seconds": 600,
        "max_ttl_seconds": 1800,
        "auto_grant_permissions": (
            Permission.ACCESS_RAW_LOCATION_DATA,
            Permission.ACCESS_VEHICLE_TRACKING_HISTORY,
        ),
        "required_fields": ("user_ids", "investigation_case"),
    },
    {
        "action": Permission.CONFIGURE_PRELAUNCH_PRICING_FLAGGED,
        "display_name": "Configure Pre-launch Pricing",
        "description": "Change flagged pricing parameters for a region before launch.",
        "required_roles": (Role.EXPANSION_MANAGER, Role.REGIONAL_MANAGER, Role.EXECUTIVE),
        "required_permissions": _APPROVE,
        "required_level": 40,
        "sensitivity_level": SensitivityLevel.MEDIUM,
        "dual_approval_required": False,
        "mfa_required_for_approval": False,
        "default_ttl_seconds": 3600,
        "max_ttl_seconds": 14400,
        "auto_grant_permissions": (Permission.CONFIGURE_PRELAUNCH_PRICING_FLAGGED,),
        "required_fields": ("region",),
    },
    {
        "action": Permission.PROMOTE_REGION_STAGE,
        "display_name": "Promote Region Stage",
        "description": "Move a region to the next launch stage.",
        "required_roles": (Role.EXPANSION_MANAGER, Role.EXECUTIVE),
        "required_permissions": _APPROVE,
        "required_level": 45,
        "sensitivity_level": SensitivityLevel.HIGH,
        "dual_approval_required": False,
        "mfa_required_for_approval": True,
        "default_ttl_seconds": 3600,
        "max_ttl_seconds": 7200,
        "auto_grant_permissions": (Permission.PROMOTE_REGION_STAGE,),
        "required_fields": ("region", "target_stage"),
    },
)


def _check_definition(key: str, workflow: WorkflowDefinition) -> None:
    """Raise ConfigurationError if a definition violates a registry invariant."""
    problems = []
    if workflow.action.value != key:
        problems.append(f"key {key!r} does not match action {workflow.action.value!r}")
    if workflow.default_ttl_seconds <= 0:
        problems.append("default_ttl_seconds must be positive")
    if workflow.max_ttl_seconds < workflow.default_ttl_seconds:
        problems.append("max_ttl_seconds must be >= default_ttl_seconds")
    if workflow.required_level <= 0:
        problems.append("required_level must be positive")
    if not workflow.required_roles:
        problems.append("required_roles cannot be empty")
    if not workflow.required_permissions:
        problems.append("required_permissions cannot be empty")
    if workflow.action not in workflow.auto_grant_permissions:
        problems.append("auto_grant_permissions must include the action itself")
    if problems:
        raise ConfigurationError(f"Invalid workflow definition {key!r}: " + "; ".join(problems))


class PolicyRegistry(Mapping[str, WorkflowDefinition]):
    """Read-only mapping of action -> WorkflowDefinition."""

    def __init__(self, definitions: Iterable[WorkflowDefinition | dict]):
        table: dict[str, WorkflowDefinition] = {}
        for raw in definitions:
            try:
                workflow = (
                    raw if isinstance(raw, WorkflowDefinition) else WorkflowDefinition(**raw)
                )
            except ValidationError as exc:
                raise ConfigurationError(f"Malformed workflow definition: {exc}") from exc
            key = workflow.action.value
            if key in table:
                raise ConfigurationError(f"Duplicate workflow definition {key!r}")
            _check_definition(key, workflow)
            table[key] = workflow
        self._table = MappingProxyType(table)

    def __getitem__(self, action: str) -> WorkflowDefinition:
        return self._table[action]

    def __iter__(self) -> Iterator[str]:
        return iter(self._table)

    def __len__(self) -> int:
        return len(self._table)

    def get(self, action, default=None):
        """Return the definition for ``action`` or ``default`` (never raises)."""
        key = action.value if isinstance(action, Permission) else action
        return self._table.get(key, default)

    def require(self, action: str | Permission) -> WorkflowDefinition:
        """Return the definition for ``action``; a missing one is a deployment defect."""
        workflow = self.get(action)
        if workflow is None:
            raise ConfigurationError(f"No workflow definition registered for {action!r}")
        return workflow

    def definitions(self) -> list[WorkflowDefinition]:
        return list(self._table.values())


def build_default_registry() -> PolicyRegistry:
    """Construct the production registry. Call once at process start."""
    registry = PolicyRegistry(_DEFAULT_DEFINITIONS)
    logger.info("Policy registry loaded with %d workflow definitions", len(registry))
    return registry


_registry: PolicyRegistry | None = None


def get_policy_registry() -> PolicyRegistry:
    """Return the process-wide registry, building it on first use."""
    global _registry  # noqa: PLW0603
    if _registry is None:
        _registry = build_default_registry()
    return _registry
