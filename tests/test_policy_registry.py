# This project was developed with assistance from AI tools.
"""Tests for the workflow Policy Registry."""

import pytest
from pydantic import ValidationError

from xpress_db.enums import Permission, Role, SensitivityLevel

from xpress_authz.core.exceptions import ConfigurationError
from xpress_authz.services.policy_registry import (
    _DEFAULT_DEFINITIONS,
    PolicyRegistry,
    build_default_registry,
)

EXPECTED_ACTIONS = {
    "configure_alerts",
    "unmask_pii_with_mfa",
    "cross_region_override",
    "approve_payout_batch",
    "manage_users",
    "assign_roles",
    "revoke_access",
    "manage_api_keys",
    "export_audit_data",
    "access_raw_location_data",
    "configure_prelaunch_pricing_flagged",
    "promote_region_stage",
}


def _definition(**overrides) -> dict:
    base = dict(_DEFAULT_DEFINITIONS[0])
    base.update(overrides)
    return base


# ---------------------------------------------------------------------------
# Default table
# ---------------------------------------------------------------------------


def test_default_registry_has_all_workflows():
    registry = build_default_registry()
    assert set(registry) == EXPECTED_ACTIONS
    assert len(registry) == 12


def test_critical_workflows_need_dual_approval_and_mfa():
    registry = build_default_registry()
    for action in ("unmask_pii_with_mfa", "approve_payout_batch", "access_raw_location_data"):
        workflow = registry[action]
        assert workflow.sensitivity_level == SensitivityLevel.CRITICAL
        assert workflow.dual_approval_required
        assert workflow.mfa_required_for_approval
        assert workflow.required_approvals == 2
        assert workflow.default_ttl_seconds <= 1800


def test_ttl_bounds_are_consistent():
    registry = build_default_registry()
    for workflow in registry.values():
        assert 0 < workflow.default_ttl_seconds <= workflow.max_ttl_seconds
    assert registry["access_raw_location_data"].default_ttl_seconds == 600


def test_auto_grants_include_action():
    registry = build_default_registry()
    for action, workflow in registry.items():
        assert Permission(action) in workflow.auto_grant_permissions


def test_get_accepts_enum_and_string():
    registry = build_default_registry()
    assert registry.get(Permission.MANAGE_USERS) is registry.get("manage_users")
    assert registry.get("does_not_exist") is None


def test_require_unknown_raises_configuration_error():
    registry = build_default_registry()
    with pytest.raises(ConfigurationError, match="No workflow definition"):
        registry.require("does_not_exist")


# ---------------------------------------------------------------------------
# Immutability
# ---------------------------------------------------------------------------


def test_registry_cannot_be_mutated():
    registry = build_default_registry()
    with pytest.raises(TypeError):
        registry["configure_alerts"] = registry["manage_users"]  # type: ignore[index]


def test_workflow_definitions_are_frozen():
    workflow = build_default_registry()["configure_alerts"]
    with pytest.raises(ValidationError):
        workflow.required_level = 1


# ---------------------------------------------------------------------------
# Malformed definitions
# ---------------------------------------------------------------------------


def test_missing_field_raises_configuration_error():
    bad = _definition()
    del bad["required_level"]
    with pytest.raises(ConfigurationError, match="Malformed"):
        PolicyRegistry([bad])


def test_max_ttl_below_default_rejected():
    with pytest.raises(ConfigurationError, match="max_ttl_seconds"):
        PolicyRegistry([_definition(default_ttl_seconds=3600, max_ttl_seconds=60)])


def test_empty_roles_rejected():
    with pytest.raises(ConfigurationError, match="required_roles"):
        PolicyRegistry([_definition(required_roles=())])


def test_auto_grant_without_action_rejected():
    with pytest.raises(ConfigurationError, match="auto_grant_permissions"):
        PolicyRegistry([_definition(auto_grant_permissions=(Permission.VIEW_EVIDENCE,))])


def test_duplicate_action_rejected():
    with pytest.raises(ConfigurationError, match="Duplicate"):
        PolicyRegistry([_definition(), _definition()])


def test_unknown_role_rejected():
    with pytest.raises(ConfigurationError):
        PolicyRegistry([_definition(required_roles=("night_shift_lead",))])


def test_custom_registry_accepts_valid_definition():
    registry = PolicyRegistry([_definition(required_roles=(Role.EXECUTIVE,))])
    assert registry["configure_alerts"].required_roles == (Role.EXECUTIVE,)
