# This project was developed with assistance from AI tools.
"""Access decision REST endpoints."""

from fastapi import APIRouter, Request

from ..middleware.auth import CurrentUser, mfa_verified
from ..schemas.access import (
    AccessDecision,
    EvaluateAccessRequest,
    PermissionValidation,
    ValidatePermissionsRequest,
    VehiclePermissionsResponse,
)
from ..services.access import get_access_engine

router = APIRouter()


@router.post("/evaluate", response_model=AccessDecision)
async def evaluate_access(
    body: EvaluateAccessRequest,
    request: Request,
    user: CurrentUser,
) -> AccessDecision:
    """Evaluate one permission for the caller against the given context."""
    context = body.context
    if mfa_verified(request) and not context.mfa_verified:
        context = context.model_copy(update={"mfa_verified": True})
    return await get_access_engine().evaluate_access(user, body.permission, context)


@router.get("/permissions", response_model=VehiclePermissionsResponse)
async def list_vehicle_permissions(user: CurrentUser) -> VehiclePermissionsResponse:
    """Vehicle permissions the caller currently holds."""
    return VehiclePermissionsResponse(
        user_id=user.user_id,
        permissions=await get_access_engine().get_effective_vehicle_permissions(user),
    )


@router.post("/validate", response_model=PermissionValidation)
async def validate_permissions(
    body: ValidatePermissionsRequest,
    user: CurrentUser,
) -> PermissionValidation:
    return await get_access_engine().validate_vehicle_permissions(user, body.permissions)
