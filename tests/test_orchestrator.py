"""
test_orchestrator.py — Agent orchestrator: routing, workflows, status.

Agents are AsyncMock doubles except where a real strategist/diplomat
exercises the end-to-end path through the queue.

Called by: pytest
Depends on: supplybot/orchestrator.py
"""

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from supplybot.agents import AgentResult, AgentType, StrategistAgent
from supplybot.models import ActivityLog, AgentTaskRecord
from supplybot.orchestrator import AgentOrchestrator
from supplybot.services.task_queue import TaskQueue


def _agent(result=None, healthy=True):
    agent = MagicMock()
    agent.initialize = AsyncMock()
    agent.shutdown = AsyncMock()
    agent.health_check = AsyncMock(return_value=healthy)
    agent.execute_task = AsyncMock(return_value=result or AgentResult.ok({"done": True}))
    return agent


@pytest.fixture()
def queue(session_factory):
    return TaskQueue(session_factory, max_attempts=3, backoff_seconds=0)


@pytest.fixture()
def orchestrator(session_factory, queue):
    return AgentOrchestrator(
        scout=_agent(),
        strategist=_agent(),
        diplomat=_agent(),
        queue=queue,
        session_factory=session_factory,
    )


# ── Lifecycle & health ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_context_manager_initializes_and_shuts_down(orchestrator):
    async with orchestrator as orch:
        assert orch is orchestrator
        for agent in orch.agents.values():
            agent.initialize.assert_awaited_once()
    for agent in orchestrator.agents.values():
        agent.shutdown.assert_awaited_once()


@pytest.mark.asyncio
async def test_health_check_map(session_factory, queue):
    broken = _agent()
    broken.health_check.side_effect = RuntimeError("browser gone")
    orch = AgentOrchestrator(
        scout=broken, strategist=_agent(healthy=False), diplomat=_agent(), queue=queue, session_factory=session_factory
    )
    assert await orch.health_check() == {"scout": False, "strategist": False, "diplomat": True}


# ── Queueing ────────────────────────────────────────────────────────


def test_queue_task_validates_types(orchestrator):
    with pytest.raises(ValueError, match="Unknown agent type"):
        orchestrator.queue_task("auditor", "scan_supplier")
    with pytest.raises(ValueError, match="Unknown task type for scout"):
        orchestrator.queue_task("scout", "predict_stockouts")


@pytest.mark.asyncio
async def test_process_next_completes_and_logs(orchestrator, db_session):
    task_id = orchestrator.queue_task("scout", "scan_supplier", {"supplier_id": 1}, priority=1)

    result = await orchestrator.process_next()

    assert result.success
    task = orchestrator.agents[AgentType.SCOUT].execute_task.await_args.args[0]
    assert (task.type, task.payload, task.id) == ("scan_supplier", {"supplier_id": 1}, str(task_id))
    assert db_session.get(AgentTaskRecord, task_id).status == "completed"
    log = db_session.query(ActivityLog).filter_by(entity_type="task", entity_id=task_id).one()
    assert (log.agent_type, log.action, log.success) == ("scout", "scan_supplier", True)
    assert log.organization_id is None


@pytest.mark.asyncio
async def test_process_next_empty_queue(orchestrator):
    assert await orchestrator.process_next() is None


@pytest.mark.asyncio
async def test_retryable_failure_goes_back_to_waiting(session_factory, queue, db_session):
    diplomat = _agent(AgentResult.fail("Mail transport unavailable", retryable=True))
    orch = AgentOrchestrator(
        scout=_agent(), strategist=_agent(), diplomat=diplomat, queue=queue, session_factory=session_factory
    )
    task_id = orch.queue_task("diplomat", "initiate_negotiation", {"organization_id": 1})

    result = await orch.process_next()

    assert not result.success
    record = db_session.get(AgentTaskRecord, task_id)
    assert record.status == "waiting"
    assert record.last_error == "Mail transport unavailable"
    log = db_session.query(ActivityLog).filter_by(entity_id=task_id).one()
    assert log.success is False
    assert log.organization_id == 1


@pytest.mark.asyncio
async def test_execute_now_bypasses_queue(orchestrator, db_session):
    result = await orchestrator.execute_now("strategist", "analyze_inventory", {"organization_id": 1})

    assert result.success
    assert db_session.query(AgentTaskRecord).count() == 0
    log = db_session.query(ActivityLog).filter_by(action="analyze_inventory").one()
    assert log.organization_id == 1


@pytest.mark.asyncio
async def test_run_worker_drains_queue_and_stops(orchestrator, queue):
    for _ in range(3):
        orchestrator.queue_task("scout", "scan_all_suppliers", {})
    stop = asyncio.Event()
    seen = []

    async def scan(task):
        seen.append(task.id)
        if len(seen) == 3:
            stop.set()
        return AgentResult.ok({"scanned": 0})

    orchestrator.agents[AgentType.SCOUT].execute_task.side_effect = scan

    await asyncio.wait_for(orchestrator.run_worker(stop, poll_interval=0.01), timeout=5)

    assert len(seen) == 3
    assert queue.counts()["completed"] == 3


@pytest.mark.asyncio
async def test_run_worker_survives_crashing_job(orchestrator, queue):
    orchestrator.queue_task("scout", "scan_all_suppliers", {})
    orchestrator.queue_task("scout", "scan_all_suppliers", {})
    stop = asyncio.Event()
    calls = []

    async def flaky(task):
        calls.append(task.id)
        if len(calls) == 1:
            raise RuntimeError("agent exploded")
        stop.set()
        return AgentResult.ok()

    orchestrator.agents[AgentType.SCOUT].execute_task.side_effect = flaky

    await asyncio.wait_for(orchestrator.run_worker(stop, poll_interval=0.01), timeout=5)

    assert len(calls) == 2


# ── Workflows ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_procurement_cycle_order(orchestrator, queue, test_org):
    ids = await orchestrator.run_procurement_cycle(test_org.id)

    assert len(ids) == 4
    claimed = []
    while (job := queue.claim_next()) is not None:
        claimed.append((job.agent_type, job.task_type, job.priority))
        queue.complete(job.id)
    assert claimed == [
        ("scout", "scan_all_suppliers", 1),
        ("strategist", "analyze_inventory", 2),
        ("strategist", "predict_stockouts", 2),
        ("strategist", "generate_reorder_suggestions", 3),
    ]


@pytest.mark.asyncio
async def test_auto_reorder_scenario(session_factory, queue, db_session, test_org, test_item, test_offer, test_supplier):
    """8 on hand, reorder point 8, reorder qty 15 → warning, one negotiation task for 15."""
    orch = AgentOrchestrator(
        scout=_agent(),
        strategist=StrategistAgent(session_factory, threshold_days=14),
        diplomat=_agent(),
        queue=queue,
        session_factory=session_factory,
    )

    analysis = await orch.execute_now("strategist", "analyze_inventory", {"organization_id": test_org.id})
    assert analysis.data[0]["urgency"] == "warning"

    [task_id] = await orch.auto_reorder(test_org.id)

    record = db_session.get(AgentTaskRecord, task_id)
    assert (record.agent_type, record.task_type, record.priority) == ("diplomat", "initiate_negotiation", 2)
    assert record.payload == {
        "organization_id": test_org.id,
        "supplier_id": test_supplier.id,
        "products": [{"product_id": test_item.product_id, "quantity": 15}],
    }


@pytest.mark.asyncio
async def test_auto_reorder_groups_by_cheapest_supplier(
    orchestrator, db_session, test_org, test_item, test_product, test_offer, make_supplier, make_offer
):
    cheaper = make_supplier("Bolt Barn", contact_email="hi@boltbarn.example")
    make_offer(cheaper, test_product, 80.0)

    [task_id] = await orchestrator.auto_reorder(test_org.id)

    assert db_session.get(AgentTaskRecord, task_id).payload["supplier_id"] == cheaper.id


@pytest.mark.asyncio
async def test_auto_reorder_skips_healthy_stock(orchestrator, db_session, test_org, test_item, test_offer):
    test_item.current_stock = 100
    db_session.commit()
    assert await orchestrator.auto_reorder(test_org.id) == []


# ── Queue status ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_queue_status_counts(orchestrator):
    orchestrator.queue_task("scout", "scan_all_suppliers", {})
    assert await orchestrator.get_queue_status() == {"waiting": 1, "active": 0, "completed": 0, "failed": 0}


@pytest.mark.asyncio
async def test_queue_status_timeout_falls_back_to_zeros(orchestrator):
    slow = MagicMock()
    slow.counts.side_effect = lambda: time.sleep(0.5)
    orchestrator.queue = slow

    status = await orchestrator.get_queue_status(timeout=0.05)

    assert status == {"waiting": 0, "active": 0, "completed": 0, "failed": 0}


@pytest.mark.asyncio
async def test_queue_status_backend_error_falls_back_to_zeros(orchestrator):
    broken = MagicMock()
    broken.counts.side_effect = RuntimeError("database is locked")
    orchestrator.queue = broken

    assert await orchestrator.get_queue_status() == {"waiting": 0, "active": 0, "completed": 0, "failed": 0}


@pytest.mark.asyncio
async def test_crashing_agent_marks_job_failed(orchestrator, db_session):
    orchestrator.agents[AgentType.SCOUT].execute_task.side_effect = RuntimeError("agent exploded")
    task_id = orchestrator.queue_task("scout", "scan_all_suppliers", {})

    result = await orchestrator.process_next()

    assert result.error == "agent exploded"
    assert db_session.get(AgentTaskRecord, task_id).status == "failed"
