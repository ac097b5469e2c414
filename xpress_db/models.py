# This project was developed with assistance from AI tools.
"""
Xpress Ops authorization -- persisted models

Only the audit trail is persisted relationally; approval requests, tokens,
users and regions live behind keyed stores owned by other subsystems.
"""

from sqlalchemy import JSON, Column, DateTime, Integer, String, func

from .database import Base


class AuditEvent(Base):
    """Append-only audit trail. INSERT + SELECT only -- no UPDATE or DELETE."""

    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    prev_hash = Column(String(64), nullable=True)
    user_id = Column(String(255), nullable=True, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    decision_id = Column(String(64), nullable=True, index=True)
    approval_request_id = Column(String(64), nullable=True, index=True)
    event_data = Column(JSON, nullable=True)

    def __repr__(self):
        return f"<AuditEvent(id={self.id}, type='{self.event_type}')>"
