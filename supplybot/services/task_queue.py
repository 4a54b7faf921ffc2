"""Durable priority queue on the agent_tasks table.

Business Rules:
  - Statuses: waiting → active → completed | failed
  - Claim order: priority ascending (1 runs first), then oldest first;
    rows are locked with FOR UPDATE SKIP LOCKED where the backend supports
    it so several worker processes can share the table
  - Retryable failures go back to waiting with exponential backoff
    (base × 2^(attempts-1)) until max_attempts, then failed
  - Non-retryable failures go straight to failed

Called by: orchestrator.py
Depends on: models/activity.py (AgentTaskRecord), database.py
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import func

from ..config import settings
from ..database import session_scope
from ..models import AgentTaskRecord
from ..utils import utcnow

log = logging.getLogger(__name__)

STATUSES = ("waiting", "active", "completed", "failed")


@dataclass
class QueuedTask:
    id: int
    agent_type: str
    task_type: str
    payload: dict
    priority: int
    attempts: int
    max_attempts: int


class TaskQueue:
    def __init__(self, session_factory=None, *, max_attempts: int | None = None, backoff_seconds: float | None = None):
        self.session_factory = session_factory
        self.max_attempts = max_attempts or settings.queue_max_attempts
        self.backoff_seconds = settings.queue_backoff_seconds if backoff_seconds is None else backoff_seconds

    def retry_delay(self, attempts: int) -> float:
        return self.backoff_seconds * 2 ** max(0, attempts - 1)

    def enqueue(self, agent_type: str, task_type: str, payload: dict | None = None, priority: int = 5, run_after=None) -> int:
        with session_scope(self.session_factory) as db:
            record = AgentTaskRecord(
                agent_type=agent_type,
                task_type=task_type,
                payload=payload or {},
                priority=priority,
                status="waiting",
                max_attempts=self.max_attempts,
                run_after=run_after or utcnow(),
            )
            db.add(record)
            db.commit()
            log.debug(f"Queued {agent_type}/{task_type} (id={record.id}, priority={priority})")
            return record.id

    def claim_next(self) -> QueuedTask | None:
        """Move the next runnable job to active and return a detached snapshot."""
        with session_scope(self.session_factory) as db:
            record = (
                db.query(AgentTaskRecord)
                .filter(
                    AgentTaskRecord.status == "waiting",
                    AgentTaskRecord.run_after <= utcnow(),
                )
                .order_by(
                    AgentTaskRecord.priority.asc(),
                    AgentTaskRecord.created_at.asc(),
                    AgentTaskRecord.id.asc(),
                )
                .with_for_update(skip_locked=True)
                .first()
            )
            if record is None:
                return None

            record.status = "active"
            record.attempts = (record.attempts or 0) + 1
            record.started_at = utcnow()
            snapshot = QueuedTask(
                id=record.id,
                agent_type=record.agent_type,
                task_type=record.task_type,
                payload=dict(record.payload or {}),
                priority=record.priority,
                attempts=record.attempts,
                max_attempts=record.max_attempts,
            )
            db.commit()
            return snapshot

    def complete(self, task_id: int, result: dict | None = None) -> None:
        with session_scope(self.session_factory) as db:
            record = db.get(AgentTaskRecord, task_id)
            if record is None:
                return
            record.status = "completed"
            record.result = result
            record.last_error = None
            record.completed_at = utcnow()
            db.commit()

    def fail(self, task_id: int, error: str | None, *, retryable: bool = False, result: dict | None = None) -> str:
        """Record a failed attempt. Returns the job's new status."""
        with session_scope(self.session_factory) as db:
            record = db.get(AgentTaskRecord, task_id)
            if record is None:
                return "failed"
            record.last_error = error
            record.result = result
            if retryable and record.attempts < record.max_attempts:
                delay = self.retry_delay(record.attempts)
                record.status = "waiting"
                record.run_after = utcnow() + timedelta(seconds=delay)
                log.info(
                    f"Task {record.agent_type}/{record.task_type} (id={task_id}) "
                    f"retry {record.attempts}/{record.max_attempts} in {delay:.0f}s: {error}"
                )
            else:
                record.status = "failed"
                record.completed_at = utcnow()
                log.warning(
                    f"Task {record.agent_type}/{record.task_type} (id={task_id}) failed "
                    f"after {record.attempts} attempt(s): {error}"
                )
            status = record.status
            db.commit()
            return status

    def counts(self) -> dict:
        with session_scope(self.session_factory) as db:
            rows = (
                db.query(AgentTaskRecord.status, func.count(AgentTaskRecord.id))
                .group_by(AgentTaskRecord.status)
                .all()
            )
        counts = {s: 0 for s in STATUSES}
        for status, n in rows:
            if status in counts:
                counts[status] = n
        return counts

    def get(self, task_id: int) -> AgentTaskRecord | None:
        with session_scope(self.session_factory) as db:
            record = db.get(AgentTaskRecord, task_id)
            if record is not None:
                db.expunge(record)
            return record
