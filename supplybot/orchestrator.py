"""Agent orchestrator — routes queued tasks to scout, strategist and diplomat.

Business Rules:
  - Constructed explicitly with its agents and queue; used as an async
    context manager that initializes and shuts down every agent
  - Task types are checked at enqueue time (ValueError for unknown ones)
  - Every processed job writes one ActivityLog row, success or not
  - Retryable results go back to the queue with backoff; others fail
  - Procurement cycle: scan_all (1) → analyze_inventory (2) →
    predict_stockouts (2) → generate_reorder_suggestions (3)
  - Auto-reorder: items at/below reorder point, cheapest in-stock offer,
    one initiate_negotiation task (priority 2) per supplier

Called by: worker.py, scheduler.py
Depends on: agents/, services/task_queue.py, services/activity_service.py
"""

import asyncio
import logging

from .agents import TASK_TYPES, AgentResult, AgentTask, AgentType, BaseAgent
from .agents.strategist import cheapest_in_stock_offer
from .agents.types import DiplomatTaskType, ScoutTaskType, StrategistTaskType
from .config import settings
from .database import SessionLocal, session_scope
from .models import InventoryItem
from .services.activity_service import log_activity
from .services.task_queue import STATUSES, QueuedTask, TaskQueue

log = logging.getLogger(__name__)


class AgentOrchestrator:
    def __init__(
        self,
        *,
        scout: BaseAgent,
        strategist: BaseAgent,
        diplomat: BaseAgent,
        queue: TaskQueue | None = None,
        session_factory=None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.queue = queue or TaskQueue(self.session_factory)
        self.agents: dict[AgentType, BaseAgent] = {
            AgentType.SCOUT: scout,
            AgentType.STRATEGIST: strategist,
            AgentType.DIPLOMAT: diplomat,
        }

    # ── Lifecycle ───────────────────────────────────────────────────

    async def initialize(self) -> None:
        for agent in self.agents.values():
            await agent.initialize()
        log.info("Orchestrator ready")

    async def shutdown(self) -> None:
        for agent_type, agent in self.agents.items():
            try:
                await agent.shutdown()
            except Exception as e:
                log.error(f"Error shutting down {agent_type.value} agent: {e}")
        log.info("Orchestrator shut down")

    async def __aenter__(self) -> "AgentOrchestrator":
        await self.initialize()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.shutdown()

    async def health_check(self) -> dict[str, bool]:
        health = {}
        for agent_type, agent in self.agents.items():
            try:
                health[agent_type.value] = bool(await agent.health_check())
            except Exception as e:
                log.warning(f"Health check failed for {agent_type.value}: {e}")
                health[agent_type.value] = False
        return health

    # ── Queue ───────────────────────────────────────────────────────

    def _validate(self, agent_type, task_type) -> tuple[AgentType, str]:
        try:
            agent = AgentType(agent_type)
        except ValueError:
            raise ValueError(f"Unknown agent type: {agent_type}") from None
        try:
            task = TASK_TYPES[agent](task_type)
        except ValueError:
            raise ValueError(f"Unknown task type for {agent.value}: {task_type}") from None
        return agent, task.value

    def queue_task(self, agent_type, task_type, payload: dict | None = None, priority: int = 5) -> int:
        agent, task = self._validate(agent_type, task_type)
        return self.queue.enqueue(agent.value, task, payload or {}, priority)

    def _record(self, agent_type: AgentType, task_type: str, task_id, payload: dict, result: AgentResult) -> None:
        organization_id = (payload or {}).get("organization_id")
        with session_scope(self.session_factory) as db:
            log_activity(
                db,
                agent_type.value,
                task_type,
                entity_type="task",
                entity_id=task_id if isinstance(task_id, int) else None,
                organization_id=organization_id if isinstance(organization_id, int) else None,
                success=result.success,
                error=result.error,
                details={"data": result.model_dump(mode="json")["data"]} if result.success else {},
            )
            db.commit()

    async def _run(self, agent_type: AgentType, task: AgentTask) -> AgentResult:
        try:
            return await self.agents[agent_type].execute_task(task)
        except Exception as e:
            log.exception(f"{agent_type.value}/{task.type} raised: {e}")
            return AgentResult.fail(str(e))

    async def process_next(self) -> AgentResult | None:
        """Claim and run one job. Returns None when nothing is runnable."""
        job: QueuedTask | None = await asyncio.to_thread(self.queue.claim_next)
        if job is None:
            return None

        try:
            agent_type = AgentType(job.agent_type)
        except ValueError:
            result = AgentResult.fail(f"Unknown agent type: {job.agent_type}")
            await asyncio.to_thread(self.queue.fail, job.id, result.error)
            return result

        task = AgentTask(id=str(job.id), type=job.task_type, payload=job.payload, priority=job.priority)
        result = await self._run(agent_type, task)
        dumped = result.model_dump(mode="json")

        if result.success:
            await asyncio.to_thread(self.queue.complete, job.id, dumped)
        else:
            await asyncio.to_thread(
                self.queue.fail, job.id, result.error, retryable=result.retryable, result=dumped
            )
        await asyncio.to_thread(self._record, agent_type, job.task_type, job.id, job.payload, result)
        return result

    async def run_worker(self, stop_event: asyncio.Event, poll_interval: float | None = None) -> None:
        poll = settings.queue_poll_interval_seconds if poll_interval is None else poll_interval
        log.info("Queue worker started")
        while not stop_event.is_set():
            try:
                result = await self.process_next()
            except Exception as e:
                log.exception(f"Queue worker error: {e}")
                result = None
            if result is None:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=poll)
                except asyncio.TimeoutError:
                    pass
        log.info("Queue worker stopped")

    async def execute_now(self, agent_type, task_type, payload: dict | None = None) -> AgentResult:
        """Run a task immediately, bypassing the queue."""
        agent, task_type = self._validate(agent_type, task_type)
        result = await self._run(agent, AgentTask(type=task_type, payload=payload or {}))
        await asyncio.to_thread(self._record, agent, task_type, None, payload, result)
        return result

    async def get_queue_status(self, timeout: float | None = None) -> dict[str, int]:
        timeout = settings.queue_status_timeout_seconds if timeout is None else timeout
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.queue.counts), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning(f"Queue status timed out after {timeout}s")
        except Exception as e:
            log.warning(f"Queue status unavailable: {e}")
        return {s: 0 for s in STATUSES}

    # ── Workflows ───────────────────────────────────────────────────

    async def run_procurement_cycle(self, organization_id: int) -> list[int]:
        steps = [
            (AgentType.SCOUT, ScoutTaskType.SCAN_ALL_SUPPLIERS, 1),
            (AgentType.STRATEGIST, StrategistTaskType.ANALYZE_INVENTORY, 2),
            (AgentType.STRATEGIST, StrategistTaskType.PREDICT_STOCKOUTS, 2),
            (AgentType.STRATEGIST, StrategistTaskType.GENERATE_REORDER_SUGGESTIONS, 3),
        ]
        payload = {"organization_id": organization_id}
        task_ids = [
            await asyncio.to_thread(self.queue_task, agent, task, payload, priority)
            for agent, task, priority in steps
        ]
        log.info(f"Procurement cycle queued for organization {organization_id}: {task_ids}")
        return task_ids

    def _reorder_groups(self, organization_id: int) -> tuple[dict[int, list[dict]], list[str]]:
        groups: dict[int, list[dict]] = {}
        unsourced = []
        with session_scope(self.session_factory) as db:
            items = (
                db.query(InventoryItem)
                .filter(
                    InventoryItem.organization_id == organization_id,
                    InventoryItem.current_stock <= InventoryItem.reorder_point,
                )
                .all()
            )
            for item in items:
                offer = cheapest_in_stock_offer(db, item.product_id)
                if offer is None:
                    unsourced.append(item.product.sku)
                    continue
                groups.setdefault(offer.supplier_id, []).append(
                    {"product_id": item.product_id, "quantity": max(item.reorder_quantity or 0, 1)}
                )
        return groups, unsourced

    async def auto_reorder(self, organization_id: int) -> list[int]:
        groups, unsourced = await asyncio.to_thread(self._reorder_groups, organization_id)
        if unsourced:
            log.warning(f"Auto-reorder: no in-stock supplier for {', '.join(unsourced)}")

        task_ids = []
        for supplier_id, products in groups.items():
            task_id = await asyncio.to_thread(
                self.queue_task,
                AgentType.DIPLOMAT,
                DiplomatTaskType.INITIATE_NEGOTIATION,
                {"organization_id": organization_id, "supplier_id": supplier_id, "products": products},
                2,
            )
            task_ids.append(task_id)
        log.info(f"Auto-reorder for organization {organization_id}: {len(task_ids)} negotiation(s) queued")
        return task_ids
