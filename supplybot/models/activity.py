"""Audit and queue models — ActivityLog, AgentTaskRecord."""

from sqlalchemy import JSON, Boolean, Column, Index, Integer, String, Text

from ..database import UTCDateTime
from ..utils import utcnow
from .base import Base


class ActivityLog(Base):
    """Append-only audit trail of every agent action."""

    __tablename__ = "activity_log"
    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer)
    agent_type = Column(String(30), nullable=False)
    action = Column(String(100), nullable=False)
    entity_type = Column(String(50))
    entity_id = Column(Integer)
    success = Column(Boolean, default=True)
    error = Column(Text)
    details = Column(JSON, default=dict)
    created_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        Index("ix_activity_agent_created", "agent_type", "created_at"),
        Index("ix_activity_entity", "entity_type", "entity_id"),
    )


class AgentTaskRecord(Base):
    """Durable priority-queue row. Lower priority number runs first."""

    __tablename__ = "agent_tasks"
    id = Column(Integer, primary_key=True)
    agent_type = Column(String(30), nullable=False)
    task_type = Column(String(50), nullable=False)
    payload = Column(JSON, default=dict)
    priority = Column(Integer, nullable=False, default=5)
    status = Column(String(20), nullable=False, default="waiting")  # waiting, active, completed, failed
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    run_after = Column(UTCDateTime, default=utcnow)
    last_error = Column(Text)
    result = Column(JSON)
    created_at = Column(UTCDateTime, default=utcnow)
    started_at = Column(UTCDateTime)
    completed_at = Column(UTCDateTime)

    __table_args__ = (
        Index("ix_agent_tasks_claim", "status", "priority", "run_after"),
    )
