# This project was developed with assistance from AI tools.
"""Region directory and scope resolution schemas."""

from pydantic import BaseModel, ConfigDict, Field


class Region(BaseModel):
    """An operating region (tenant) known to the region directory."""

    model_config = ConfigDict(frozen=True)

    region_id: str
    name: str = ""
    is_active: bool = True
    parent_id: str | None = None


class RegionScopeResult(BaseModel):
    """Outcome of resolving a user's regional scope for one request."""

    allowed: bool
    reason: str
    applied_policies: list[str] = Field(default_factory=list)
    requires_mfa: bool = False
