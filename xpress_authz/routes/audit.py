# This project was developed with assistance from AI tools.
"""Audit trail query endpoints (database backend only)."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from xpress_db import get_db
from xpress_db.enums import Permission

from ..core.config import settings
from ..middleware.auth import require_permission
from ..schemas.audit import AuditChainVerifyResponse, AuditEventItem, AuditEventsResponse
from ..services.audit import get_events_by_decision, verify_audit_chain


def require_database_backend() -> None:
    if settings.AUDIT_BACKEND != "database":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Audit trail is not stored in the database",
        )


router = APIRouter(
    dependencies=[
        Depends(require_permission(Permission.READ_ALL_AUDIT_LOGS)),
        Depends(require_database_backend),
    ]
)


@router.get("/decisions/{decision_id}", response_model=AuditEventsResponse)
async def get_decision_events(
    decision_id: str,
    session: AsyncSession = Depends(get_db),
) -> AuditEventsResponse:
    """Audit events recorded for one access decision."""
    events = await get_events_by_decision(session, decision_id)
    return AuditEventsResponse(
        decision_id=decision_id,
        count=len(events),
        events=[
            AuditEventItem(
                id=e.id,
                timestamp=str(e.timestamp),
                event_type=e.event_type,
                user_id=e.user_id,
                decision_id=e.decision_id,
                approval_request_id=e.approval_request_id,
                event_data=e.event_data,
            )
            for e in events
        ],
    )


@router.get("/verify", response_model=AuditChainVerifyResponse)
async def verify_audit(
    session: AsyncSession = Depends(get_db),
) -> AuditChainVerifyResponse:
    """Verify audit trail hash chain integrity."""
    result = await verify_audit_chain(session)
    return AuditChainVerifyResponse(**result)
