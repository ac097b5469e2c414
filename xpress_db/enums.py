# This project was developed with assistance from AI tools.
"""
Domain enums for the operations console authorization model.

Shared domain types used by both SQLAlchemy models (xpress_db package)
and Pydantic schemas (xpress_authz package). Roles and permissions are a
closed set: strings coming from tokens or request bodies are parsed into
these enums at the boundary and unknown values are rejected there.
"""

import enum


class Role(str, enum.Enum):
    GROUND_OPS = "ground_ops"
    OPS_MONITOR = "ops_monitor"
    REGION_VIEWER = "region_viewer"
    SUPPORT = "support"
    ANALYST = "analyst"
    OPS_MANAGER = "ops_manager"
    FLEET_SUPERVISOR = "fleet_supervisor"
    RISK_INVESTIGATOR = "risk_investigator"
    FINANCE_OPS = "finance_ops"
    REGIONAL_MANAGER = "regional_manager"
    EXPANSION_MANAGER = "expansion_manager"
    AUDITOR = "auditor"
    EXECUTIVE = "executive"
    IAM_ADMIN = "iam_admin"
    APP_ADMIN = "app_admin"

    @classmethod
    def default_levels(cls) -> dict["Role", int]:
        """Authority level each role is normally assigned at (higher = more)."""
        return {
            cls.GROUND_OPS: 10,
            cls.REGION_VIEWER: 15,
            cls.OPS_MONITOR: 20,
            cls.SUPPORT: 25,
            cls.ANALYST: 25,
            cls.OPS_MANAGER: 30,
            cls.FLEET_SUPERVISOR: 30,
            cls.RISK_INVESTIGATOR: 35,
            cls.FINANCE_OPS: 40,
            cls.REGIONAL_MANAGER: 40,
            cls.EXPANSION_MANAGER: 45,
            cls.AUDITOR: 50,
            cls.EXECUTIVE: 60,
            cls.IAM_ADMIN: 80,
            cls.APP_ADMIN: 90,
        }


class Permission(str, enum.Enum):
    WILDCARD = "*"

    # Vehicle -- basic operations
    VIEW_VEHICLES_BASIC = "view_vehicles_basic"
    VIEW_VEHICLES_DETAILED = "view_vehicles_detailed"
    VIEW_VEHICLES_SUPPORT = "view_vehicles_support"
    VIEW_VEHICLE_DASHBOARD = "view_vehicle_dashboard"
    VIEW_VEHICLE_ANALYTICS = "view_vehicle_analytics"

    # Vehicle -- management
    CREATE_VEHICLES = "create_vehicles"
    UPDATE_VEHICLE_DETAILS = "update_vehicle_details"
    DELETE_VEHICLES = "delete_vehicles"
    APPROVE_VEHICLE_REGISTRATIONS = "approve_vehicle_registrations"
    APPROVE_VEHICLE_DECOMMISSIONING = "approve_vehicle_decommissioning"
    MANAGE_REGIONAL_VEHICLES = "manage_regional_vehicles"
    MANAGE_VEHICLE_FLEET_BUDGET = "manage_vehicle_fleet_budget"

    # Vehicle -- assignments
    ASSIGN_DRIVER_TO_VEHICLE = "assign_driver_to_vehicle"
    APPROVE_VEHICLE_ASSIGNMENTS = "approve_vehicle_assignments"
    UPDATE_VEHICLE_STATUS_BASIC = "update_vehicle_status_basic"
    CONFIGURE_VEHICLE_OPERATIONAL_PARAMS = "configure_vehicle_operational_params"

    # Vehicle -- maintenance and compliance
    SCHEDULE_VEHICLE_MAINTENANCE = "schedule_vehicle_maintenance"
    APPROVE_MAJOR_VEHICLE_MAINTENANCE = "approve_major_vehicle_maintenance"
    VIEW_VEHICLE_MAINTENANCE_HISTORY = "view_vehicle_maintenance_history"
    MANAGE_VEHICLE_COMPLIANCE = "manage_vehicle_compliance"
    REVIEW_VEHICLE_COMPLIANCE_VIOLATIONS = "review_vehicle_compliance_violations"

    # Vehicle -- telemetry
    VIEW_VEHICLE_TELEMETRY_BASIC = "view_vehicle_telemetry_basic"
    VIEW_VEHICLE_TELEMETRY_DETAILED = "view_vehicle_telemetry_detailed"
    ACCESS_VEHICLE_TRACKING_HISTORY = "access_vehicle_tracking_history"
    ACCESS_VEHICLE_SECURITY_LOGS = "access_vehicle_security_logs"

    # Vehicle -- financial
    APPROVE_VEHICLE_PURCHASES = "approve_vehicle_purchases"
    MANAGE_VEHICLE_FINANCING = "manage_vehicle_financing"
    PROCESS_VEHICLE_INSURANCE_CLAIMS = "process_vehicle_insurance_claims"
    APPROVE_VEHICLE_MAINTENANCE_BUDGETS = "approve_vehicle_maintenance_budgets"
    VIEW_VEHICLE_COST_ANALYSIS = "view_vehicle_cost_analysis"
    MANAGE_VEHICLE_DEPRECIATION = "manage_vehicle_depreciation"
    VIEW_VEHICLE_FINANCIAL_REPORTS = "view_vehicle_financial_reports"

    # Vehicle -- reporting
    GENERATE_VEHICLE_PERFORMANCE_REPORTS = "generate_vehicle_performance_reports"
    CREATE_VEHICLE_REPORTS = "create_vehicle_reports"
    ANALYZE_VEHICLE_UTILIZATION = "analyze_vehicle_utilization"
    EXPORT_VEHICLE_DATA_ANONYMIZED = "export_vehicle_data_anonymized"
    CREATE_FLEET_EFFICIENCY_REPORTS = "create_fleet_efficiency_reports"
    VIEW_GLOBAL_FLEET_ANALYTICS = "view_global_fleet_analytics"
    ACCESS_EXECUTIVE_VEHICLE_REPORTS = "access_executive_vehicle_reports"

    # Vehicle -- investigation
    INVESTIGATE_VEHICLE_INCIDENTS = "investigate_vehicle_incidents"
    ACCESS_VEHICLE_INCIDENT_REPORTS = "access_vehicle_incident_reports"
    UPDATE_VEHICLE_SUPPORT_NOTES = "update_vehicle_support_notes"
    AUDIT_VEHICLE_OWNERSHIP_VERIFICATION = "audit_vehicle_ownership_verification"

    # Vehicle -- expansion
    PLAN_VEHICLE_FLEET_EXPANSION = "plan_vehicle_fleet_expansion"
    EVALUATE_VEHICLE_PARTNERSHIP_OPPORTUNITIES = "evaluate_vehicle_partnership_opportunities"
    CONFIGURE_EXPANSION_VEHICLE_REQUIREMENTS = "configure_expansion_vehicle_requirements"
    APPROVE_STRATEGIC_VEHICLE_INVESTMENTS = "approve_strategic_vehicle_investments"
    APPROVE_VEHICLE_EXPANSION_PLANS = "approve_vehicle_expansion_plans"
    APPROVE_MAJOR_VEHICLE_PARTNERSHIPS = "approve_major_vehicle_partnerships"
    MANAGE_VEHICLE_PARTNERSHIPS = "manage_vehicle_partnerships"

    # Dispatch / operations
    ASSIGN_DRIVER = "assign_driver"
    CONTACT_DRIVER_MASKED = "contact_driver_masked"
    CANCEL_TRIP_OPS = "cancel_trip_ops"
    VIEW_LIVE_MAP = "view_live_map"
    MANAGE_QUEUE = "manage_queue"
    VIEW_METRICS_REGION = "view_metrics_region"
    MANAGE_SHIFT = "manage_shift"
    THROTTLE_PROMOS_REGION = "throttle_promos_region"
    VIEW_DRIVER_FILES_MASKED = "view_driver_files_masked"
    APPROVE_TEMP_ACCESS_REGION = "approve_temp_access_region"

    # Support / risk
    CASE_OPEN = "case_open"
    CASE_CLOSE = "case_close"
    VIEW_MASKED_PROFILES = "view_masked_profiles"
    VIEW_EVIDENCE = "view_evidence"
    APPLY_ACCOUNT_HOLD = "apply_account_hold"

    # Analytics / audit / admin
    QUERY_CURATED_VIEWS = "query_curated_views"
    EXPORT_REPORTS = "export_reports"
    READ_ALL_AUDIT_LOGS = "read_all_audit_logs"
    SET_ALLOWED_REGIONS = "set_allowed_regions"
    SET_PII_SCOPE = "set_pii_scope"
    MANAGE_FEATURE_FLAGS = "manage_feature_flags"
    MANAGE_SERVICE_CONFIGS = "manage_service_configs"
    APPROVE_REQUESTS = "approve_requests"

    # Approval workflow actions (granted temporarily on approval)
    CONFIGURE_ALERTS = "configure_alerts"
    UNMASK_PII_WITH_MFA = "unmask_pii_with_mfa"
    CROSS_REGION_OVERRIDE = "cross_region_override"
    APPROVE_PAYOUT_BATCH = "approve_payout_batch"
    MANAGE_USERS = "manage_users"
    ASSIGN_ROLES = "assign_roles"
    REVOKE_ACCESS = "revoke_access"
    MANAGE_API_KEYS = "manage_api_keys"
    EXPORT_AUDIT_DATA = "export_audit_data"
    ACCESS_RAW_LOCATION_DATA = "access_raw_location_data"
    CONFIGURE_PRELAUNCH_PRICING_FLAGGED = "configure_prelaunch_pricing_flagged"
    PROMOTE_REGION_STAGE = "promote_region_stage"

    @classmethod
    def vehicle_permissions(cls) -> frozenset["Permission"]:
        """Permissions that operate on vehicle records."""
        return frozenset(p for p in cls if "vehicle" in p.value)


class PIIScope(str, enum.Enum):
    NONE = "none"
    MASKED = "masked"
    FULL = "full"


class DataClass(str, enum.Enum):
    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    RESTRICTED = "restricted"


class OwnershipType(str, enum.Enum):
    XPRESS_OWNED = "xpress_owned"
    FLEET_OWNED = "fleet_owned"
    OPERATOR_OWNED = "operator_owned"
    DRIVER_OWNED = "driver_owned"


class OwnershipAccessLevel(str, enum.Enum):
    NONE = "none"
    BASIC = "basic"
    DETAILED = "detailed"
    FINANCIAL = "financial"
    FULL = "full"


class SensitivityLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ApprovalStatus(str, enum.Enum):
    DRAFT = "draft"
    VALIDATED = "validated"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @classmethod
    def terminal_states(cls) -> frozenset["ApprovalStatus"]:
        """States where a request can no longer change."""
        return frozenset({cls.APPROVED, cls.REJECTED, cls.EXPIRED})

    @classmethod
    def valid_transitions(cls) -> dict["ApprovalStatus", frozenset["ApprovalStatus"]]:
        """Allowed state transitions in the approval lifecycle."""
        return {
            cls.DRAFT: frozenset({cls.VALIDATED}),
            cls.VALIDATED: frozenset({cls.PENDING_APPROVAL}),
            cls.PENDING_APPROVAL: frozenset({cls.APPROVED, cls.REJECTED, cls.EXPIRED}),
            cls.APPROVED: frozenset(),
            cls.REJECTED: frozenset(),
            cls.EXPIRED: frozenset(),
        }


class NotificationChannel(str, enum.Enum):
    EMAIL = "email"
    SMS = "sms"
    SLACK = "slack"
