# This project was developed with assistance from AI tools.
"""Pydantic response models for audit trail endpoints."""

from pydantic import BaseModel


class AuditEventItem(BaseModel):
    """Single audit event in a query response."""

    id: int
    timestamp: str
    event_type: str
    user_id: str | None = None
    decision_id: str | None = None
    approval_request_id: str | None = None
    event_data: dict | str | None = None


class AuditEventsResponse(BaseModel):
    """Response for GET /api/audit/decisions/{decision_id}."""

    decision_id: str
    count: int
    events: list[AuditEventItem]


class AuditChainVerifyResponse(BaseModel):
    """Response for GET /api/audit/verify."""

    status: str
    events_checked: int
    first_break_id: int | None = None
