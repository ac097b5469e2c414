# This project was developed with assistance from AI tools.
"""
JWT authentication middleware for Keycloak OIDC.

Validates Bearer tokens against Keycloak's JWKS endpoint, loads the caller's
identity snapshot, and provides FastAPI dependencies for route-level
authorization through the access decision engine.

Set AUTH_DISABLED=true to bypass validation (tests / local dev without Keycloak).
"""

import logging
import time
from datetime import UTC, datetime
from typing import Annotated

import httpx
import jwt
from fastapi import Depends, HTTPException, Request, status

from xpress_db.enums import Permission, PIIScope, Role

from ..core.auth import parse_role
from ..core.config import settings
from ..schemas.access import AccessContext, AccessDecision
from ..schemas.auth import RoleAssignment, TokenPayload, User
from ..services.access import get_access_engine
from ..services.identity import get_user_store
from ..services.mfa import get_mfa_service

logger = logging.getLogger(__name__)

MFA_VERIFIED_HEADER = "X-MFA-Verified"
MFA_CHALLENGE_HEADER = "X-MFA-Challenge"

# ---------------------------------------------------------------------------
# JWKS cache
# ---------------------------------------------------------------------------

_jwks_data: dict | None = None
_jwks_fetched_at: float = 0


def _fetch_jwks() -> dict:
    """Fetch JSON Web Key Set from Keycloak. Raises on failure."""
    url = (
        f"{settings.KEYCLOAK_URL}/realms/{settings.KEYCLOAK_REALM}"
        "/protocol/openid-connect/certs"
    )
    response = httpx.get(url, timeout=5)
    response.raise_for_status()
    return response.json()


def _get_jwks(force_refresh: bool = False) -> dict:
    """Return cached JWKS, refreshing if stale or forced."""
    global _jwks_data, _jwks_fetched_at  # noqa: PLW0603

    now = time.time()
    if _jwks_data is None or force_refresh or (now - _jwks_fetched_at) > settings.JWKS_CACHE_TTL:
        _jwks_data = _fetch_jwks()
        _jwks_fetched_at = now

    return _jwks_data


def _find_key(jwks: dict, kid: str | None) -> jwt.PyJWK | None:
    for key in jwt.PyJWKSet.from_dict(jwks).keys:
        if key.key_id == kid:
            return key
    return None


def _get_signing_key(token: str) -> jwt.PyJWK:
    """Find the signing key for the given token, refreshing once on key rotation."""
    try:
        kid = jwt.get_unverified_header(token).get("kid")
        key = _find_key(_get_jwks(), kid) or _find_key(_get_jwks(force_refresh=True), kid)
    except (httpx.HTTPError, httpx.TimeoutException) as exc:
        logger.error("Failed to fetch JWKS from Keycloak: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service unavailable",
        ) from exc
    if key is None:
        raise jwt.InvalidTokenError(f"No matching key found for kid={kid}")
    return key


# ---------------------------------------------------------------------------
# Token validation
# ---------------------------------------------------------------------------


def _extract_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header."""
    auth = request.headers.get("Authorization")
    if auth and auth.startswith("Bearer "):
        return auth[7:]
    return None


def _decode_token(token: str) -> TokenPayload:
    """Validate and decode a JWT against Keycloak's JWKS."""
    signing_key = _get_signing_key(token)
    issuer = f"{settings.KEYCLOAK_URL}/realms/{settings.KEYCLOAK_REALM}"

    payload = jwt.decode(
        token,
        signing_key.key,
        algorithms=["RS256"],
        issuer=issuer,
        options={"verify_aud": False},
    )
    return TokenPayload(**payload)


def _user_from_claims(payload: TokenPayload) -> User:
    """Build a user snapshot from token claims when the identity store has none.

    Roles come from ``realm_access.roles`` (Keycloak built-ins are ignored)
    and are valid for the lifetime of the token.
    """
    roles = [r for r in (parse_role(v) for v in payload.realm_access.get("roles", [])) if r]
    if not roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No recognized role assigned",
        )

    issued = datetime.fromtimestamp(payload.iat, UTC) if payload.iat else datetime.now(UTC)
    expires = datetime.fromtimestamp(payload.exp, UTC) if payload.exp else None
    levels = Role.default_levels()
    try:
        pii_scope = PIIScope(payload.pii_scope)
    except ValueError:
        pii_scope = PIIScope.NONE

    return User(
        user_id=payload.sub,
        email=payload.email,
        name=payload.name or payload.preferred_username,
        roles=tuple(
            RoleAssignment(role=r, level=levels[r], valid_from=issued, valid_until=expires)
            for r in roles
        ),
        allowed_regions=frozenset(payload.allowed_regions),
        pii_scope=pii_scope,
    )


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------

_DISABLED_USER = User(
    user_id="dev-user",
    email="dev@xpress-ops.local",
    name="Dev User",
    roles=(
        RoleAssignment(
            role=Role.EXECUTIVE,
            level=Role.default_levels()[Role.EXECUTIVE],
            allowed_regions=frozenset({"*"}),
            valid_from=datetime(2024, 1, 1, tzinfo=UTC),
        ),
    ),
    allowed_regions=frozenset({"*"}),
    pii_scope=PIIScope.FULL,
    mfa_enabled=True,
)


async def get_current_user(request: Request) -> User:
    """FastAPI dependency: validate JWT and return the caller's User snapshot.

    When AUTH_DISABLED=true, returns a dev executive user without token validation.
    """
    if settings.AUTH_DISABLED:
        return _DISABLED_USER

    token = _extract_token(request)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = _decode_token(token)
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    except jwt.InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    user = await get_user_store().get_user(payload.sub)
    if user is None:
        user = _user_from_claims(payload)
    return user


# Type alias for use in route signatures
CurrentUser = Annotated[User, Depends(get_current_user)]


def mfa_verified(request: Request) -> bool:
    return request.headers.get(MFA_VERIFIED_HEADER, "").lower() == "true"


def require_permission(permission: Permission):
    """Dependency factory: authorize a route through the access decision engine.

    The region comes from the ``region_id`` query parameter when present.
    Fields the decision masks are stashed on ``request.state`` for
    ``FieldMaskingMiddleware``.

    Usage:
        @router.get("/vehicles", dependencies=[Depends(require_permission(Permission.VIEW_VEHICLES_BASIC))])
    """

    async def _check(request: Request, user: CurrentUser) -> AccessDecision:
        context = AccessContext(
            region_id=request.query_params.get("region_id"),
            mfa_verified=mfa_verified(request),
        )
        decision = await get_access_engine().evaluate_access(user, permission, context)
        if not decision.allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=decision.reason)
        if decision.requires_mfa:
            challenge = await get_mfa_service().create_challenge(
                user.user_id, context={"permission": permission.value}
            )
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="MFA verification required",
                headers={MFA_CHALLENGE_HEADER: challenge.challenge_id},
            )
        request.state.masked_fields = decision.masked_fields
        return decision

    return _check
