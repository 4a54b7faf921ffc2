"""Background scheduler — periodic procurement workflows.

Jobs only enqueue work; the queue worker runs it.
  - Procurement cycle: every procurement_cycle_interval_min, per organization
  - Auto-reorder: every auto_reorder_interval_min, per organization
  - Negotiation expiry sweep: every negotiation_expiry_interval_min

Called by: worker.py
Depends on: orchestrator.py, models/organizations.py
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .agents.types import AgentType, DiplomatTaskType

log = logging.getLogger(__name__)

scheduler = AsyncIOScheduler(
    job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60}
)


def _organization_ids(session_factory) -> list[int]:
    from .database import session_scope
    from .models import Organization

    with session_scope(session_factory) as db:
        return [org_id for (org_id,) in db.query(Organization.id).order_by(Organization.id).all()]


async def _job_procurement_cycle(orchestrator) -> None:
    for org_id in _organization_ids(orchestrator.session_factory):
        try:
            await orchestrator.run_procurement_cycle(org_id)
        except Exception as e:
            log.error(f"Procurement cycle failed for organization {org_id}: {e}")


async def _job_auto_reorder(orchestrator) -> None:
    for org_id in _organization_ids(orchestrator.session_factory):
        try:
            await orchestrator.auto_reorder(org_id)
        except Exception as e:
            log.error(f"Auto-reorder failed for organization {org_id}: {e}")


async def _job_negotiation_expiry(orchestrator) -> None:
    try:
        orchestrator.queue_task(AgentType.DIPLOMAT, DiplomatTaskType.EXPIRE_NEGOTIATIONS, {}, priority=4)
    except Exception as e:
        log.error(f"Negotiation expiry sweep not queued: {e}")


def configure_scheduler(orchestrator) -> None:
    """Register all jobs. Call before scheduler.start()."""
    from .config import settings

    if not settings.scheduler_enabled:
        log.info("Scheduler disabled")
        return

    # Pending jobs are not deduplicated by replace_existing before start
    scheduler.remove_all_jobs()
    scheduler.add_job(
        _job_procurement_cycle,
        "interval",
        minutes=settings.procurement_cycle_interval_min,
        args=[orchestrator],
        id="procurement_cycle",
        name="Procurement cycle",
        replace_existing=True,
    )
    scheduler.add_job(
        _job_auto_reorder,
        "interval",
        minutes=settings.auto_reorder_interval_min,
        args=[orchestrator],
        id="auto_reorder",
        name="Auto-reorder",
        replace_existing=True,
    )
    scheduler.add_job(
        _job_negotiation_expiry,
        "interval",
        minutes=settings.negotiation_expiry_interval_min,
        args=[orchestrator],
        id="negotiation_expiry",
        name="Negotiation expiry sweep",
        replace_existing=True,
    )
    for job in scheduler.get_jobs():
        log.info(f"Scheduled job: {job.name} every {job.trigger}")
