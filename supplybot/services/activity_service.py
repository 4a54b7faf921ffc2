"""Activity service — append-only audit trail for agent actions.

Every task the orchestrator runs, every email the diplomat sends and every
portal order lands here. Rows are flushed, never committed: the caller's
unit of work decides whether they persist.

Usage:
    from supplybot.services.activity_service import log_activity, log_email_activity
"""

import logging

from sqlalchemy.orm import Session

from ..models import ActivityLog

log = logging.getLogger("supplybot.activity")


# ═══════════════════════════════════════════════════════════════════════
#  ACTIVITY LOGGING
# ═══════════════════════════════════════════════════════════════════════


def log_activity(
    db: Session,
    agent_type: str,
    action: str,
    *,
    entity_type: str | None = None,
    entity_id: int | None = None,
    organization_id: int | None = None,
    success: bool = True,
    error: str | None = None,
    details: dict | None = None,
) -> ActivityLog:
    record = ActivityLog(
        organization_id=organization_id,
        agent_type=agent_type,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        success=success,
        error=error,
        details=details or {},
    )
    db.add(record)
    db.flush()
    return record


def log_email_activity(
    db: Session,
    kind: str,
    *,
    supplier,
    subject: str,
    negotiation_id: int | None = None,
    details: dict | None = None,
) -> ActivityLog:
    """Record an outbound supplier email (negotiation, counter, quote, expedite...)."""
    entity_type, entity_id = ("negotiation", negotiation_id) if negotiation_id else ("supplier", supplier.id)
    payload = {"to": supplier.contact_email, "subject": subject, "kind": kind}
    payload.update(details or {})
    record = log_activity(
        db,
        "diplomat",
        f"email_{kind}",
        entity_type=entity_type,
        entity_id=entity_id,
        organization_id=supplier.organization_id,
        details=payload,
    )
    log.info(f"Email '{kind}' to {supplier.name} <{supplier.contact_email}>: {subject}")
    return record


def get_recent_activity(
    db: Session,
    *,
    agent_type: str | None = None,
    organization_id: int | None = None,
    limit: int = 50,
) -> list[ActivityLog]:
    q = db.query(ActivityLog)
    if agent_type:
        q = q.filter(ActivityLog.agent_type == agent_type)
    if organization_id:
        q = q.filter(ActivityLog.organization_id == organization_id)
    return q.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit).all()


def get_entity_activity(db: Session, entity_type: str, entity_id: int) -> list[ActivityLog]:
    return (
        db.query(ActivityLog)
        .filter(ActivityLog.entity_type == entity_type, ActivityLog.entity_id == entity_id)
        .order_by(ActivityLog.id)
        .all()
    )
