# This project was developed with assistance from AI tools.
"""
Application configuration.

All settings read from environment variables with sensible local dev defaults.
Group related settings together; each group becomes a section future PRs extend.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_ENV_FILE = _PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    """Application settings -- single source of truth for env-driven config."""

    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -- App --
    APP_NAME: str = "xpress-ops-authz"
    DEBUG: bool = False

    # -- CORS --
    ALLOWED_HOSTS: list[str] = ["http://localhost:3000"]

    # -- Auth --
    AUTH_DISABLED: bool = Field(
        default=False,
        description="Bypass JWT validation. Set True for tests and local dev without Keycloak.",
    )
    KEYCLOAK_URL: str = "http://localhost:8080"
    KEYCLOAK_REALM: str = "xpress-ops"
    JWKS_CACHE_TTL: int = Field(
        default=300,
        description="JWKS cache lifetime in seconds (default 5 minutes).",
    )

    # -- Decision cache --
    DECISION_CACHE_TTL_SECONDS: int = Field(
        default=300,
        description="Lifetime of a cached access decision (default 5 minutes).",
    )
    DECISION_CACHE_MAX_ENTRIES: int = Field(
        default=10_000,
        description="Oldest entries are evicted beyond this size.",
    )
    DECISION_CACHE_SWEEP_SECONDS: int = Field(
        default=60,
        description="Interval of the background pass that drops expired entries.",
    )

    # -- Policy --
    EMERGENCY_GRACE_HOURS: int = Field(
        default=24,
        description="Emergency overrides are honored for this long after being granted.",
    )
    MAX_REGION_INHERITANCE_DEPTH: int = Field(
        default=5,
        description="Region hierarchies deeper than this are rejected.",
    )
    APPROVAL_REQUEST_EXPIRY_HOURS: int = Field(
        default=72,
        description="Pending approval requests older than this move to expired.",
    )

    # -- Audit --
    AUDIT_BACKEND: Literal["log", "database"] = Field(
        default="log",
        description="Where decision and approval audit events are written.",
    )


settings = Settings()
