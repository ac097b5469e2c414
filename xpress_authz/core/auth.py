# This project was developed with assistance from AI tools.
"""Pure auth utility functions with no FastAPI or HTTP dependencies.

These are used by the decision engine, the approval orchestrator and the
middleware layer. Keeping them free of FastAPI/Starlette imports lets the
policy math run (and be tested) outside the request lifecycle.
"""

import logging
from collections.abc import Iterable
from datetime import datetime

from xpress_db.enums import Permission, Role

from ..schemas.auth import RoleAssignment, TemporaryAccessToken, User

logger = logging.getLogger(__name__)

P = Permission

_OPS_MANAGER_PERMISSIONS = frozenset({
    P.VIEW_VEHICLES_BASIC,
    P.VIEW_VEHICLES_DETAILED,
    P.UPDATE_VEHICLE_DETAILS,
    P.SCHEDULE_VEHICLE_MAINTENANCE,
    P.APPROVE_VEHICLE_ASSIGNMENTS,
    P.VIEW_VEHICLE_TELEMETRY_DETAILED,
    P.ASSIGN_DRIVER_TO_VEHICLE,
    P.MANAGE_VEHICLE_COMPLIANCE,
    P.VIEW_VEHICLE_MAINTENANCE_HISTORY,
    P.CREATE_VEHICLE_REPORTS,
    P.ASSIGN_DRIVER,
    P.CONTACT_DRIVER_MASKED,
    P.CANCEL_TRIP_OPS,
    P.VIEW_LIVE_MAP,
    P.MANAGE_QUEUE,
    P.VIEW_METRICS_REGION,
    P.MANAGE_SHIFT,
    P.THROTTLE_PROMOS_REGION,
    P.VIEW_DRIVER_FILES_MASKED,
    P.APPROVE_REQUESTS,
})

ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.GROUND_OPS: frozenset({
        P.VIEW_VEHICLES_BASIC,
        P.ASSIGN_DRIVER_TO_VEHICLE,
        P.UPDATE_VEHICLE_STATUS_BASIC,
        P.VIEW_VEHICLE_TELEMETRY_BASIC,
        P.ASSIGN_DRIVER,
        P.CONTACT_DRIVER_MASKED,
        P.CANCEL_TRIP_OPS,
        P.VIEW_LIVE_MAP,
        P.MANAGE_QUEUE,
        P.VIEW_METRICS_REGION,
    }),
    Role.OPS_MONITOR: frozenset({
        P.VIEW_VEHICLES_BASIC,
        P.VIEW_VEHICLE_DASHBOARD,
        P.VIEW_LIVE_MAP,
        P.VIEW_METRICS_REGION,
    }),
    Role.REGION_VIEWER: frozenset({
        P.VIEW_VEHICLES_BASIC,
        P.VIEW_VEHICLE_DASHBOARD,
    }),
    Role.SUPPORT: frozenset({
        P.VIEW_VEHICLES_BASIC,
        P.VIEW_VEHICLES_SUPPORT,
        P.VIEW_VEHICLES_DETAILED,
        P.UPDATE_VEHICLE_SUPPORT_NOTES,
        P.VIEW_VEHICLE_MAINTENANCE_HISTORY,
        P.ACCESS_VEHICLE_INCIDENT_REPORTS,
        P.CASE_OPEN,
        P.CASE_CLOSE,
        P.VIEW_MASKED_PROFILES,
    }),
    Role.ANALYST: frozenset({
        P.VIEW_VEHICLE_ANALYTICS,
        P.ANALYZE_VEHICLE_UTILIZATION,
        P.EXPORT_VEHICLE_DATA_ANONYMIZED,
        P.GENERATE_VEHICLE_PERFORMANCE_REPORTS,
        P.CREATE_FLEET_EFFICIENCY_REPORTS,
        P.VIEW_VEHICLE_COST_ANALYSIS,
        P.QUERY_CURATED_VIEWS,
        P.EXPORT_REPORTS,
    }),
    Role.OPS_MANAGER: _OPS_MANAGER_PERMISSIONS,
    Role.FLEET_SUPERVISOR: frozenset({
        P.VIEW_VEHICLES_BASIC,
        P.VIEW_VEHICLES_DETAILED,
        P.UPDATE_VEHICLE_DETAILS,
        P.ASSIGN_DRIVER_TO_VEHICLE,
        P.SCHEDULE_VEHICLE_MAINTENANCE,
        P.VIEW_VEHICLE_TELEMETRY_BASIC,
        P.VIEW_VEHICLE_MAINTENANCE_HISTORY,
    }),
    Role.RISK_INVESTIGATOR: frozenset({
        P.VIEW_VEHICLES_DETAILED,
        P.INVESTIGATE_VEHICLE_INCIDENTS,
        P.ACCESS_VEHICLE_INCIDENT_REPORTS,
        P.ACCESS_VEHICLE_TRACKING_HISTORY,
        P.ACCESS_VEHICLE_SECURITY_LOGS,
        P.AUDIT_VEHICLE_OWNERSHIP_VERIFICATION,
        P.UNMASK_PII_WITH_MFA,
        P.CASE_OPEN,
        P.CASE_CLOSE,
        P.VIEW_EVIDENCE,
        P.APPLY_ACCOUNT_HOLD,
        P.APPROVE_REQUESTS,
    }),
    Role.FINANCE_OPS: frozenset({
        P.VIEW_VEHICLES_BASIC,
        P.VIEW_VEHICLE_COST_ANALYSIS,
        P.VIEW_VEHICLE_FINANCIAL_REPORTS,
        P.APPROVE_VEHICLE_PURCHASES,
        P.MANAGE_VEHICLE_FINANCING,
        P.PROCESS_VEHICLE_INSURANCE_CLAIMS,
        P.APPROVE_VEHICLE_MAINTENANCE_BUDGETS,
        P.MANAGE_VEHICLE_DEPRECIATION,
        P.APPROVE_REQUESTS,
    }),
    Role.REGIONAL_MANAGER: _OPS_MANAGER_PERMISSIONS | frozenset({
        P.MANAGE_REGIONAL_VEHICLES,
        P.APPROVE_VEHICLE_REGISTRATIONS,
        P.MANAGE_VEHICLE_FLEET_BUDGET,
        P.APPROVE_MAJOR_VEHICLE_MAINTENANCE,
        P.VIEW_VEHICLE_FINANCIAL_REPORTS,
        P.VIEW_VEHICLE_COST_ANALYSIS,
        P.APPROVE_VEHICLE_MAINTENANCE_BUDGETS,
        P.APPROVE_TEMP_ACCESS_REGION,
    }),
    Role.EXPANSION_MANAGER: frozenset({
        P.VIEW_VEHICLES_BASIC,
        P.PLAN_VEHICLE_FLEET_EXPANSION,
        P.EVALUATE_VEHICLE_PARTNERSHIP_OPPORTUNITIES,
        P.CONFIGURE_EXPANSION_VEHICLE_REQUIREMENTS,
        P.MANAGE_VEHICLE_PARTNERSHIPS,
        P.APPROVE_REQUESTS,
    }),
    Role.AUDITOR: frozenset({
        P.VIEW_VEHICLES_BASIC,
        P.VIEW_VEHICLES_DETAILED,
        P.VIEW_VEHICLE_MAINTENANCE_HISTORY,
        P.ACCESS_VEHICLE_SECURITY_LOGS,
        P.READ_ALL_AUDIT_LOGS,
        P.APPROVE_REQUESTS,
    }),
    Role.EXECUTIVE: frozenset({P.WILDCARD}),
    Role.IAM_ADMIN: frozenset({
        P.MANAGE_USERS,
        P.ASSIGN_ROLES,
        P.REVOKE_ACCESS,
        P.SET_ALLOWED_REGIONS,
        P.SET_PII_SCOPE,
        P.APPROVE_REQUESTS,
    }),
    Role.APP_ADMIN: frozenset({
        P.MANAGE_FEATURE_FLAGS,
        P.MANAGE_SERVICE_CONFIGS,
        P.APPROVE_REQUESTS,
    }),
}


def parse_role(value: str | Role) -> Role | None:
    """Parse a role string; unknown roles yield None instead of raising."""
    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        return None


def parse_permissions(values: Iterable[str | Permission]) -> frozenset[Permission]:
    """Parse permission strings, dropping (and logging) unknown values."""
    parsed = set()
    for value in values:
        try:
            parsed.add(Permission(value))
        except ValueError:
            logger.warning("Ignoring unknown permission %r", value)
    return frozenset(parsed)


def active_assignments(user: User, now: datetime) -> list[RoleAssignment]:
    """Role assignments that are active and not expired at ``now``."""
    return [a for a in user.roles if a.is_current(now)]


def active_tokens(user: User, now: datetime) -> list[TemporaryAccessToken]:
    return [t for t in user.temporary_tokens if t.is_active(now)]


def role_permissions(assignments: Iterable[RoleAssignment]) -> frozenset[Permission]:
    """Union of the permission matrix rows for the given assignments."""
    granted: set[Permission] = set()
    for assignment in assignments:
        granted |= ROLE_PERMISSIONS.get(assignment.role, frozenset())
    return frozenset(granted)


def effective_permissions(
    user: User,
    now: datetime,
    tokens: Iterable[TemporaryAccessToken] | None = None,
) -> frozenset[Permission]:
    """Role permissions plus permissions granted by active temporary tokens.

    ``tokens`` overrides the user's own token list (the engine passes the
    set it has already checked against the revocation registry).
    """
    granted = set(role_permissions(active_assignments(user, now)))
    for token in tokens if tokens is not None else active_tokens(user, now):
        granted.update(token.granted_permissions)
    return frozenset(granted)


def has_permission(granted: frozenset[Permission], permission: Permission) -> bool:
    return Permission.WILDCARD in granted or permission in granted


def highest_level(user: User, now: datetime) -> int:
    """Highest authority level among the user's current assignments (0 if none)."""
    return max((a.level for a in active_assignments(user, now)), default=0)
