# This project was developed with assistance from AI tools.
"""Identity snapshot schemas consumed by the decision engine.

Users, role assignments and temporary tokens are owned by the identity
subsystem. The engine only reads them, so the models are frozen.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from xpress_db.enums import Permission, PIIScope, Role

from . import UTCDateTime


class RoleAssignment(BaseModel):
    """A role held by a user, scoped to regions and a validity window."""

    model_config = ConfigDict(frozen=True)

    role: Role
    level: int = Field(gt=0)
    allowed_regions: frozenset[str] = frozenset()
    valid_from: UTCDateTime
    valid_until: UTCDateTime | None = None
    is_active: bool = True

    def is_expired(self, now: datetime) -> bool:
        """Expired the instant ``now`` reaches ``valid_until``."""
        return self.valid_until is not None and now >= self.valid_until

    def is_current(self, now: datetime) -> bool:
        return self.is_active and self.valid_from <= now and not self.is_expired(now)


class TemporaryAccessToken(BaseModel):
    """Time-boxed grant minted when an approval request completes."""

    model_config = ConfigDict(frozen=True)

    token_id: str
    workflow_action: Permission
    granted_permissions: tuple[Permission, ...]
    granted_regions: tuple[str, ...] = ()
    expires_at: UTCDateTime
    issued_at: UTCDateTime
    requester_id: str
    justification: str
    granted_by: tuple[str, ...] = ()
    grantor_level: int = Field(gt=0)
    revoked_at: UTCDateTime | None = None

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and now < self.expires_at


class User(BaseModel):
    """Snapshot of a user as returned by the identity store."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str = ""
    name: str = ""
    roles: tuple[RoleAssignment, ...] = ()
    allowed_regions: frozenset[str] = frozenset()
    pii_scope: PIIScope = PIIScope.NONE
    temporary_tokens: tuple[TemporaryAccessToken, ...] = ()
    mfa_enabled: bool = False


class TokenPayload(BaseModel):
    """Decoded JWT token claims from Keycloak."""

    sub: str
    email: str = ""
    preferred_username: str = ""
    name: str = ""
    realm_access: dict = Field(default_factory=dict)
    allowed_regions: list[str] = Field(default_factory=list)
    pii_scope: str = "none"
    iat: int | None = None
    exp: int | None = None
