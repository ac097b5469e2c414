# This project was developed with assistance from AI tools.
"""Access Decision Engine.

``evaluate_access`` gathers the facts a decision needs (live tokens from the
token registry, region records from the region directory), consults the
decision cache, and otherwise runs ``evaluate_snapshot``: a synchronous,
side-effect-free function of the user snapshot, permission, context and
gathered facts. Every decision is audited before it is returned.

Checks run in a fixed order and the first failing check decides:

    0. MFA bypass detection
    1. role validity
    2. permission match (role matrix, wildcard, temporary token)
    2b. emergency override validation
    3. regional scope
    4. vehicle ownership tier
    5. PII scope, data classification and field masking
    6. MFA obligations
    7. audit obligations and access conditions

The engine fails closed: a collaborator error or an audit sink failure
yields a deny, never a grant. A missing or malformed workflow definition is
a deployment defect and raises ``ConfigurationError``.
"""

import logging
import re
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import UTC, datetime, timedelta

from xpress_db.enums import (
    DataClass,
    OwnershipAccessLevel,
    OwnershipType,
    Permission,
    PIIScope,
    Role,
)

from ..core.auth import (
    active_assignments,
    effective_permissions,
    has_permission,
    role_permissions,
)
from ..core.config import settings
from ..core.exceptions import ConfigurationError
from ..schemas.access import (
    AccessCondition,
    AccessContext,
    AccessDecision,
    PermissionValidation,
)
from ..schemas.auth import TemporaryAccessToken, User
from ..schemas.region import Region
from .audit import AuditLogger, build_audit_logger
from .decision_cache import DecisionCache, fingerprint
from .identity import UserStore, get_user_store
from .policy_registry import PolicyRegistry, get_policy_registry
from .region_scope import RegionDirectory, RegionScopeResolver, get_region_directory
from .risk import MaskTable, masked_fields_for, requires_enhanced_audit, requires_mfa
from .tokens import TokenRegistry, get_token_registry

logger = logging.getLogger(__name__)

P = Permission
A = OwnershipAccessLevel

EMERGENCY_CASE_PATTERN = re.compile(r"^EMRG-\d{4}-\d{3,}-[A-Z0-9]+$")

# Which vehicle permissions each ownership type exposes, by access tier.
# "full" is the restricted tier.
OWNERSHIP_ACCESS_MATRIX: dict[OwnershipType, dict[OwnershipAccessLevel, frozenset[Permission]]] = {
    OwnershipType.XPRESS_OWNED: {
        A.BASIC: frozenset({
            P.VIEW_VEHICLES_DETAILED,
            P.UPDATE_VEHICLE_DETAILS,
            P.ASSIGN_DRIVER_TO_VEHICLE,
            P.SCHEDULE_VEHICLE_MAINTENANCE,
            P.VIEW_VEHICLE_TELEMETRY_DETAILED,
        }),
        A.DETAILED: frozenset({
            P.MANAGE_VEHICLE_COMPLIANCE,
            P.APPROVE_VEHICLE_ASSIGNMENTS,
            P.VIEW_VEHICLE_FINANCIAL_REPORTS,
            P.CREATE_VEHICLE_REPORTS,
        }),
        A.FINANCIAL: frozenset({
            P.APPROVE_VEHICLE_PURCHASES,
            P.MANAGE_VEHICLE_FINANCING,
            P.VIEW_VEHICLE_COST_ANALYSIS,
            P.APPROVE_VEHICLE_MAINTENANCE_BUDGETS,
        }),
        A.FULL: frozenset({
            P.APPROVE_VEHICLE_DECOMMISSIONING,
            P.AUDIT_VEHICLE_OWNERSHIP_VERIFICATION,
        }),
    },
    OwnershipType.FLEET_OWNED: {
        A.BASIC: frozenset({
            P.VIEW_VEHICLES_DETAILED,
            P.ASSIGN_DRIVER_TO_VEHICLE,
            P.VIEW_VEHICLE_TELEMETRY_BASIC,
            P.SCHEDULE_VEHICLE_MAINTENANCE,
        }),
        A.DETAILED: frozenset({
            P.VIEW_VEHICLE_MAINTENANCE_HISTORY,
            P.MANAGE_VEHICLE_COMPLIANCE,
            P.CREATE_VEHICLE_REPORTS,
        }),
        A.FINANCIAL: frozenset({P.VIEW_VEHICLE_COST_ANALYSIS}),
        A.FULL: frozenset({P.INVESTIGATE_VEHICLE_INCIDENTS}),
    },
    OwnershipType.OPERATOR_OWNED: {
        A.BASIC: frozenset({
            P.VIEW_VEHICLES_BASIC,
            P.ASSIGN_DRIVER_TO_VEHICLE,
            P.VIEW_VEHICLE_TELEMETRY_BASIC,
        }),
        A.DETAILED: frozenset({
            P.VIEW_VEHICLE_MAINTENANCE_HISTORY,
            P.UPDATE_VEHICLE_SUPPORT_NOTES,
        }),
    },
    OwnershipType.DRIVER_OWNED: {
        A.BASIC: frozenset({P.VIEW_VEHICLES_BASIC, P.VIEW_VEHICLE_TELEMETRY_BASIC}),
        A.DETAILED: frozenset({P.VIEW_VEHICLE_MAINTENANCE_HISTORY}),
    },
}

# Roles allowed at each tier above basic. Basic only needs the permission.
OWNERSHIP_TIER_ROLES: dict[OwnershipAccessLevel, frozenset[Role]] = {
    A.DETAILED: frozenset({
        Role.OPS_MANAGER,
        Role.FLEET_SUPERVISOR,
        Role.REGIONAL_MANAGER,
        Role.EXECUTIVE,
        Role.SUPPORT,
        Role.AUDITOR,
    }),
    A.FINANCIAL: frozenset({Role.FINANCE_OPS, Role.REGIONAL_MANAGER, Role.EXECUTIVE}),
    A.FULL: frozenset({Role.EXECUTIVE, Role.RISK_INVESTIGATOR}),
}

OWNERSHIP_GATED_PERMISSIONS: frozenset[Permission] = frozenset(
    p for tiers in OWNERSHIP_ACCESS_MATRIX.values() for perms in tiers.values() for p in perms
)

# Roles cleared for confidential and restricted data
SENSITIVE_DATA_ROLES: frozenset[Role] = frozenset({
    Role.FINANCE_OPS,
    Role.REGIONAL_MANAGER,
    Role.EXECUTIVE,
    Role.ANALYST,
})

# Non-executives holding these get a supervisor approval obligation
SUPERVISOR_APPROVAL_PERMISSIONS: frozenset[Permission] = frozenset({
    P.APPROVE_STRATEGIC_VEHICLE_INVESTMENTS,
    P.APPROVE_MAJOR_VEHICLE_PARTNERSHIPS,
    P.APPROVE_VEHICLE_EXPANSION_PLANS,
})

INVESTIGATION_ACCESS_DAYS = 7

_CONDITION_POLICIES = {
    "time_limited": "time_limited_access",
    "supervisor_approval": "supervisor_approval_required",
}


def ownership_tier(ownership_type: OwnershipType, permission: Permission) -> OwnershipAccessLevel | None:
    """The tier at which ``ownership_type`` exposes ``permission``, if any."""
    for level, permissions in OWNERSHIP_ACCESS_MATRIX.get(ownership_type, {}).items():
        if permission in permissions:
            return level
    return None


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AccessDecisionEngine:
    """Evaluates RBAC + ABAC access requests."""

    def __init__(
        self,
        *,
        registry: PolicyRegistry | None = None,
        region_directory: RegionDirectory | None = None,
        cache: DecisionCache | None = None,
        audit_logger: AuditLogger | None = None,
        token_registry: TokenRegistry | None = None,
        user_store: UserStore | None = None,
        mask_table: MaskTable | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.registry = registry if registry is not None else get_policy_registry()
        self.regions = region_directory if region_directory is not None else get_region_directory()
        self.cache = cache if cache is not None else DecisionCache()
        self.audit = audit_logger if audit_logger is not None else build_audit_logger()
        self.tokens = token_registry if token_registry is not None else get_token_registry()
        self.users = user_store if user_store is not None else get_user_store()
        self.mask_table = mask_table
        self.clock = clock
        self.resolver = RegionScopeResolver()

    # -- Pure evaluation ----------------------------------------------------

    def evaluate_snapshot(
        self,
        user: User,
        permission: Permission,
        context: AccessContext,
        *,
        now: datetime,
        regions: Mapping[str, Region],
        tokens: Sequence[TemporaryAccessToken] = (),
    ) -> AccessDecision:
        """Decide access from already-gathered facts. No I/O."""
        policies = ["snapshot_permissions"]

        def deny(reason: str) -> AccessDecision:
            logger.warning(
                "Access denied: user=%s permission=%s reason=%s",
                user.user_id,
                permission.value,
                reason,
            )
            return self._decision(user.user_id, permission, False, reason, policies, now)

        # 0. MFA bypass attempts are denied outright
        if context.skip_mfa:
            policies.append("mfa_bypass_attempt_detected")
            return deny("mfa_bypass_attempt_detected")

        # 1. Role validity
        if not user.roles:
            return deny("no assigned roles")
        current = active_assignments(user, now)
        if not current:
            if all(a.is_expired(now) for a in user.roles):
                return deny("role_expired")
            return deny("role_inactive")
        policies.append("role_validity")
        roles = {a.role for a in current}

        # 2. Permission match
        granted = effective_permissions(user, now, tokens)
        if not has_permission(granted, permission):
            return deny(f"permission_denied: missing {permission.value}")
        from_roles = role_permissions(current)
        if Permission.WILDCARD in from_roles:
            policies.append("wildcard_permission")
        elif permission in from_roles:
            policies.append("role_permission_match")
        else:
            policies.append("temporary_token_grant")

        # 2b. Emergency override
        region_satisfied = False
        if context.emergency_override:
            reason = self._check_emergency(context, now)
            if reason is not None:
                return deny(reason)
            policies.append("emergency_override_validated")
            region_satisfied = True

        # 3. Regional scope
        region_mfa = False
        if context.region_id is None:
            policies.append("region_check_not_applicable")
        elif not region_satisfied:
            scope = self.resolver.resolve(
                user, context.region_id, context, now=now, regions=regions, tokens=tokens
            )
            policies.extend(scope.applied_policies)
            if not scope.allowed:
                return deny(scope.reason)
            region_mfa = scope.requires_mfa

        # 4. Vehicle ownership tier
        wildcard = Permission.WILDCARD in granted
        if context.ownership_type is not None and permission in OWNERSHIP_GATED_PERMISSIONS:
            tier = ownership_tier(context.ownership_type, permission)
            if tier is None:
                return deny(
                    f"ownership_type_permission_mismatch: {permission.value} "
                    f"not available for {context.ownership_type.value}"
                )
            tier_roles = OWNERSHIP_TIER_ROLES.get(tier)
            if tier_roles is not None and not roles & tier_roles:
                return deny(f"insufficient_ownership_privileges: {tier.value} tier required")
            policies.append(f"ownership_{tier.value}_access")
            ownership_level = tier
        else:
            ownership_level = A.FULL if wildcard else A.BASIC

        # 5. PII scope, data classification and masking
        if context.contains_pii:
            if user.pii_scope == PIIScope.NONE:
                return deny("pii_access_denied: insufficient PII scope")
            if context.data_class == DataClass.RESTRICTED and user.pii_scope != PIIScope.FULL:
                return deny("restricted_pii_requires_full_scope")
            policies.append("pii_scope_validated")
        if context.data_class in (DataClass.CONFIDENTIAL, DataClass.RESTRICTED):
            if not roles & SENSITIVE_DATA_ROLES:
                return deny("confidential_data_access_denied: insufficient role")
            policies.append("data_class_role_validated")
        masked = masked_fields_for(context.data_class, user.pii_scope, self.mask_table)
        if masked:
            policies.append("field_masking_applied")

        # 6. MFA obligations
        mfa_reasons = requires_mfa(
            permission, context, cross_region_override=region_mfa, pii_scope=user.pii_scope
        )
        needs_mfa = bool(mfa_reasons) and not context.mfa_verified
        if mfa_reasons and context.mfa_verified:
            policies.append("mfa_verified")

        # 7. Audit obligations
        if requires_enhanced_audit(permission, context, self.registry):
            policies.append("enhanced_audit")

        conditions = self._conditions(permission, context, roles, now)
        policies.extend(_CONDITION_POLICIES[c.type] for c in conditions)

        logger.debug("Access granted: user=%s permission=%s", user.user_id, permission.value)
        return self._decision(
            user.user_id,
            permission,
            True,
            "access_granted",
            policies,
            now,
            requires_mfa=needs_mfa,
            mfa_reasons=mfa_reasons,
            masked_fields=masked,
            ownership_access_level=ownership_level,
            conditions=conditions,
        )

    @staticmethod
    def _conditions(
        permission: Permission, context: AccessContext, roles: set[Role], now: datetime
    ) -> list[AccessCondition]:
        conditions = []
        if permission == P.INVESTIGATE_VEHICLE_INCIDENTS and context.case_id:
            conditions.append(
                AccessCondition(
                    type="time_limited",
                    description=f"Investigation access valid for {INVESTIGATION_ACCESS_DAYS} days",
                    expires_at=now + timedelta(days=INVESTIGATION_ACCESS_DAYS),
                    metadata={"case_id": context.case_id},
                )
            )
        if permission in SUPERVISOR_APPROVAL_PERMISSIONS and Role.EXECUTIVE not in roles:
            conditions.append(
                AccessCondition(
                    type="supervisor_approval",
                    description="Executive approval required for major financial operations",
                )
            )
        return conditions

    @staticmethod
    def _check_emergency(context: AccessContext, now: datetime) -> str | None:
        """Return a denial reason, or None when the override is valid."""
        case_id = context.emergency_case_id or ""
        if not EMERGENCY_CASE_PATTERN.match(case_id):
            return "invalid_emergency_case_format"
        if context.emergency_granted_at is None:
            return "emergency_grant_timestamp_missing"
        if now - context.emergency_granted_at > timedelta(hours=settings.EMERGENCY_GRACE_HOURS):
            return "emergency_access_expired"
        return None

    @staticmethod
    def _decision(
        user_id: str,
        permission: Permission,
        allowed: bool,
        reason: str,
        policies: Iterable[str],
        now: datetime,
        **extra,
    ) -> AccessDecision:
        return AccessDecision(
            allowed=allowed,
            reason=reason,
            user_id=user_id,
            permission=permission,
            applied_policies=list(policies),
            decision_id=f"dec_{uuid.uuid4().hex}",
            evaluated_at=now,
            **extra,
        )

    # -- Async entry points -------------------------------------------------

    async def _gather(
        self, user: User, context: AccessContext, now: datetime
    ) -> tuple[list[TemporaryAccessToken], dict[str, Region]]:
        tokens = await self.tokens.resolve_active(user.user_id, user.temporary_tokens, now)
        regions: dict[str, Region] = {}
        if context.region_id is not None:
            regions = await self.regions.get_lineage(
                context.region_id, self.resolver.max_depth + 1
            )
        return tokens, regions

    def _cache_ttl(
        self, user: User, tokens: Sequence[TemporaryAccessToken], context: AccessContext, now: datetime
    ) -> float:
        """Seconds until the earliest grant boundary that could flip this decision."""
        boundaries = [t.expires_at for t in tokens]
        for assignment in user.roles:
            if assignment.valid_until is not None:
                boundaries.append(assignment.valid_until)
            boundaries.append(assignment.valid_from)
        if context.emergency_granted_at is not None:
            boundaries.append(
                context.emergency_granted_at + timedelta(hours=settings.EMERGENCY_GRACE_HOURS)
            )
        upcoming = [(b - now).total_seconds() for b in boundaries if b > now]
        return min(upcoming, default=self.cache.ttl_seconds)

    async def _record(
        self, decision: AccessDecision, context: AccessContext | None
    ) -> AccessDecision:
        """Audit a decision; an unrecordable decision becomes a deny."""
        try:
            await self.audit.log_decision(decision, context)
        except Exception:
            logger.exception(
                "Audit sink unavailable for decision %s, failing closed", decision.decision_id
            )
            return decision.model_copy(
                update={
                    "allowed": False,
                    "reason": "audit_unavailable_fail_closed",
                    "applied_policies": [*decision.applied_policies, "fail_closed"],
                    "requires_mfa": False,
                    "ownership_access_level": A.NONE,
                }
            )
        return decision

    async def _failed_closed(
        self, user_id: str, permission: Permission, context: AccessContext, now: datetime
    ) -> AccessDecision:
        decision = self._decision(
            user_id,
            permission,
            False,
            "evaluation_failed_closed",
            ["snapshot_permissions", "fail_closed"],
            now,
        )
        return await self._record(decision, context)

    async def evaluate_access(
        self,
        user: User,
        permission: Permission,
        context: AccessContext | None = None,
    ) -> AccessDecision:
        context = context if context is not None else AccessContext()
        now = self.clock()
        snapshot = user.model_copy(deep=True)

        try:
            tokens, regions = await self._gather(snapshot, context, now)
        except ConfigurationError:
            raise
        except Exception:
            logger.exception(
                "Fact gathering failed for user=%s permission=%s, failing closed",
                snapshot.user_id,
                permission.value,
            )
            return await self._failed_closed(snapshot.user_id, permission, context, now)

        key = fingerprint(
            snapshot, permission, context, (t.token_id for t in tokens), regions
        )
        cached = await self.cache.get(key)
        if cached is not None:
            decision = cached.model_copy(
                update={
                    "decision_id": f"dec_{uuid.uuid4().hex}",
                    "evaluated_at": now,
                    "cache_hit": True,
                }
            )
            return await self._record(decision, context)

        try:
            decision = self.evaluate_snapshot(
                snapshot, permission, context, now=now, regions=regions, tokens=tokens
            )
        except ConfigurationError:
            raise
        except Exception:
            logger.exception(
                "Evaluation failed for user=%s permission=%s, failing closed",
                snapshot.user_id,
                permission.value,
            )
            return await self._failed_closed(snapshot.user_id, permission, context, now)
        recorded = await self._record(decision, context)
        if recorded is decision:
            await self.cache.set(key, decision, ttl=self._cache_ttl(snapshot, tokens, context, now))
        return recorded

    async def evaluate_access_for_user_id(
        self,
        user_id: str,
        permission: Permission,
        context: AccessContext | None = None,
    ) -> AccessDecision:
        """Load the user from the identity store, then evaluate."""
        now = self.clock()
        try:
            user = await self.users.get_user(user_id)
        except Exception:
            logger.exception("Identity store lookup failed for %s, failing closed", user_id)
            reason = "evaluation_failed_closed"
            user = None
        else:
            reason = "user_not_found"
        if user is None:
            decision = self._decision(
                user_id, permission, False, reason, ["snapshot_permissions"], now
            )
            return await self._record(decision, context)
        return await self.evaluate_access(user, permission, context)

    async def validate_vehicle_permissions(
        self, user: User, permissions: Iterable[Permission]
    ) -> PermissionValidation:
        """Check that the user holds every listed permission right now."""
        now = self.clock()
        tokens = await self.tokens.resolve_active(user.user_id, user.temporary_tokens, now)
        granted = effective_permissions(user, now, tokens)
        missing = [p for p in permissions if not has_permission(granted, p)]
        return PermissionValidation(valid=not missing, missing_permissions=missing)

    async def get_effective_vehicle_permissions(self, user: User) -> list[Permission]:
        """Sorted vehicle permissions the user holds (wildcard expands to all).

        Carried tokens count only while the token registry still has them live.
        """
        now = self.clock()
        tokens = await self.tokens.resolve_active(user.user_id, user.temporary_tokens, now)
        granted = effective_permissions(user, now, tokens)
        vehicle = Permission.vehicle_permissions()
        if Permission.WILDCARD in granted:
            held = vehicle
        else:
            held = granted & vehicle
        return sorted(held, key=lambda p: p.value)


_engine: AccessDecisionEngine | None = None


def get_access_engine() -> AccessDecisionEngine:
    """Return the process-wide engine, building it on first use."""
    global _engine  # noqa: PLW0603
    if _engine is None:
        _engine = AccessDecisionEngine()
    return _engine
