# This project was developed with assistance from AI tools.
"""Audit event service.

Every access decision and approval lifecycle action produces an audit event.
With the database backend, events form an append-only trail with a SHA-256
hash chain for tamper evidence, and a PostgreSQL advisory lock serializes
hash computation across concurrent writers. The log backend writes the same
payloads to the ``xpress_authz.audit`` logger.

Audit failures propagate to the caller: the decision engine denies rather
than grant an access it could not record.
"""

import hashlib
import json
import logging
from typing import Any

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from xpress_db import AuditEvent, DatabaseService, get_db_service

from ..core.config import settings
from ..schemas.access import AccessContext, AccessDecision
from ..schemas.approval import ApprovalRequest

logger = logging.getLogger(__name__)
audit_log = logging.getLogger("xpress_authz.audit")

# Fixed advisory lock key for audit trail serialization.
# Only audit event inserts are serialized; other DB operations are unaffected.
AUDIT_LOCK_KEY = 910_001


def _compute_hash(event_id: int, timestamp: str, event_data: dict | None) -> str:
    """Compute SHA-256 hash of an audit event's key fields."""
    payload = f"{event_id}|{timestamp}|{json.dumps(event_data, sort_keys=True, default=str)}"
    return hashlib.sha256(payload.encode()).hexdigest()


async def write_audit_event(
    session: AsyncSession,
    *,
    event_type: str,
    user_id: str | None = None,
    decision_id: str | None = None,
    approval_request_id: str | None = None,
    event_data: dict | None = None,
) -> AuditEvent:
    """Write a single audit event with hash chain linkage.

    Args:
        session: Database session.
        event_type: Event category (e.g. 'access_decision', 'approval_approved').
        user_id: User the event concerns.
        decision_id: Related access decision, if any.
        approval_request_id: Related approval request, if any.
        event_data: JSON-serializable event payload.

    Returns:
        The created AuditEvent row (with prev_hash set).
    """
    # Released automatically when the transaction commits or rolls back.
    await session.execute(text(f"SELECT pg_advisory_xact_lock({AUDIT_LOCK_KEY})"))

    latest_stmt = select(AuditEvent).order_by(AuditEvent.id.desc()).limit(1)
    result = await session.execute(latest_stmt)
    prev_event = result.scalar_one_or_none()

    if prev_event is not None:
        prev_hash = _compute_hash(prev_event.id, str(prev_event.timestamp), prev_event.event_data)
    else:
        prev_hash = "genesis"

    audit = AuditEvent(
        event_type=event_type,
        user_id=user_id,
        decision_id=decision_id,
        approval_request_id=approval_request_id,
        event_data=event_data,
        prev_hash=prev_hash,
    )
    session.add(audit)
    await session.flush()
    return audit


async def verify_audit_chain(session: AsyncSession) -> dict:
    """Verify the integrity of the audit event hash chain.

    Returns:
        {"status": "OK", "events_checked": N} on success, or
        {"status": "TAMPERED", "first_break_id": id, "events_checked": N}
        if a mismatch is found.
    """
    stmt = select(AuditEvent).order_by(AuditEvent.id.asc())
    result = await session.execute(stmt)
    events = list(result.scalars().all())

    for i, event in enumerate(events):
        if i == 0:
            expected = "genesis"
        else:
            prev = events[i - 1]
            expected = _compute_hash(prev.id, str(prev.timestamp), prev.event_data)

        if event.prev_hash != expected:
            return {
                "status": "TAMPERED",
                "first_break_id": event.id,
                "events_checked": i + 1,
            }

    return {"status": "OK", "events_checked": len(events)}


async def get_events_by_decision(session: AsyncSession, decision_id: str) -> list[AuditEvent]:
    stmt = (
        select(AuditEvent)
        .where(AuditEvent.decision_id == decision_id)
        .order_by(AuditEvent.timestamp.asc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


def decision_event_data(
    decision: AccessDecision, context: AccessContext | None = None
) -> dict[str, Any]:
    """Audit payload for a decision. Enhanced-audit decisions carry the context."""
    data = {
        "allowed": decision.allowed,
        "reason": decision.reason,
        "permission": decision.permission.value,
        "applied_policies": list(decision.applied_policies),
        "requires_mfa": decision.requires_mfa,
        "masked_fields": list(decision.masked_fields),
        "cache_hit": decision.cache_hit,
        "evaluated_at": decision.evaluated_at.isoformat(),
    }
    if context is not None and "enhanced_audit" in decision.applied_policies:
        data["context"] = context.model_dump(mode="json", exclude={"region_hierarchy"})
    return data


def approval_event_data(request: ApprovalRequest) -> dict[str, Any]:
    return {
        "action": request.action.value,
        "status": request.status.value,
        "requester_id": request.requester_id,
        "approver_ids": sorted(request.approver_ids()),
        "token_id": request.token.token_id if request.token else None,
    }


class AuditLogger:
    """Sink for decision and approval audit events."""

    async def log_decision(
        self, decision: AccessDecision, context: AccessContext | None = None
    ) -> None:
        raise NotImplementedError

    async def log_approval_action(
        self, action: str, request: ApprovalRequest, actor_id: str | None = None
    ) -> None:
        raise NotImplementedError


class LoggingAuditLogger(AuditLogger):
    """Writes audit events as structured log lines."""

    async def log_decision(
        self, decision: AccessDecision, context: AccessContext | None = None
    ) -> None:
        audit_log.info(
            "access_decision id=%s user=%s data=%s",
            decision.decision_id,
            decision.user_id,
            json.dumps(decision_event_data(decision, context), sort_keys=True, default=str),
        )

    async def log_approval_action(
        self, action: str, request: ApprovalRequest, actor_id: str | None = None
    ) -> None:
        audit_log.info(
            "approval_%s request=%s actor=%s data=%s",
            action,
            request.request_id,
            actor_id,
            json.dumps(approval_event_data(request), sort_keys=True, default=str),
        )


class DatabaseAuditLogger(AuditLogger):
    """Writes hash-chained audit events, one transaction per event."""

    def __init__(self, db_service: DatabaseService | None = None):
        self._db = db_service or get_db_service()

    async def log_decision(
        self, decision: AccessDecision, context: AccessContext | None = None
    ) -> None:
        async with self._db.session_factory() as session:
            async with session.begin():
                await write_audit_event(
                    session,
                    event_type="access_decision",
                    user_id=decision.user_id,
                    decision_id=decision.decision_id,
                    event_data=decision_event_data(decision, context),
                )

    async def log_approval_action(
        self, action: str, request: ApprovalRequest, actor_id: str | None = None
    ) -> None:
        async with self._db.session_factory() as session:
            async with session.begin():
                await write_audit_event(
                    session,
                    event_type=f"approval_{action}",
                    user_id=actor_id,
                    approval_request_id=request.request_id,
                    event_data=approval_event_data(request),
                )


def build_audit_logger() -> AuditLogger:
    """Audit sink selected by ``AUDIT_BACKEND``."""
    if settings.AUDIT_BACKEND == "database":
        return DatabaseAuditLogger()
    return LoggingAuditLogger()
