"""Task & Result contract shared by the orchestrator and every agent.

Business Rules:
  - Task types are a closed set per agent (str enums below). Each agent
    declares a handler per member; construction fails if one is missing.
  - execute_task never raises. Unknown type, bad payload, missing
    reference and unexpected crashes all come back as AgentResult.
  - retryable=True marks a transient failure the queue may run again.

Called by: orchestrator.py, services/task_queue.py
Depends on: errors.py, database.py
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError

from ..database import SessionLocal
from ..errors import NotFoundError, TransientError

log = logging.getLogger(__name__)


class AgentType(str, Enum):
    SCOUT = "scout"
    STRATEGIST = "strategist"
    DIPLOMAT = "diplomat"


class ScoutTaskType(str, Enum):
    SCAN_SUPPLIER = "scan_supplier"
    SCAN_ALL_SUPPLIERS = "scan_all_suppliers"
    CHECK_STOCK = "check_stock"
    COMPARE_PRICES = "compare_prices"


class StrategistTaskType(str, Enum):
    ANALYZE_INVENTORY = "analyze_inventory"
    PREDICT_STOCKOUTS = "predict_stockouts"
    ANALYZE_DEMAND = "analyze_demand"
    OPTIMIZE_REORDER_POINTS = "optimize_reorder_points"
    GENERATE_REORDER_SUGGESTIONS = "generate_reorder_suggestions"


class DiplomatTaskType(str, Enum):
    INITIATE_NEGOTIATION = "initiate_negotiation"
    PROCESS_RESPONSE = "process_response"
    REQUEST_QUOTE = "request_quote"
    NEGOTIATE_BULK_ORDER = "negotiate_bulk_order"
    EXPEDITE_ORDER = "expedite_order"
    EXPIRE_NEGOTIATIONS = "expire_negotiations"


TASK_TYPES: dict[AgentType, type[Enum]] = {
    AgentType.SCOUT: ScoutTaskType,
    AgentType.STRATEGIST: StrategistTaskType,
    AgentType.DIPLOMAT: DiplomatTaskType,
}


class AgentTask(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 5
    scheduled_at: datetime | None = None


class AgentResult(BaseModel):
    success: bool
    data: Any = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    retryable: bool = False

    @classmethod
    def ok(cls, data: Any = None, **metadata) -> "AgentResult":
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(cls, error: str, *, retryable: bool = False, **metadata) -> "AgentResult":
        return cls(success=False, error=error, retryable=retryable, metadata=metadata)


Handler = Callable[[Any], Awaitable[AgentResult]]


class BaseAgent(ABC):
    """Common lifecycle and dispatch for scout, strategist and diplomat."""

    agent_type: AgentType
    task_types: type[Enum]

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal
        self.initialized = False
        self._handlers = self.handlers()
        missing = [t.value for t in self.task_types if t not in self._handlers]
        if missing:
            raise TypeError(
                f"{self.__class__.__name__} has no handler for: {', '.join(missing)}"
            )

    @abstractmethod
    def handlers(self) -> dict[Enum, tuple[type[BaseModel], Handler]]:
        """Map every task type to (payload model, coroutine handler)."""

    async def initialize(self) -> None:
        self.initialized = True
        log.info(f"{self.agent_type.value} agent initialized")

    async def shutdown(self) -> None:
        self.initialized = False
        log.info(f"{self.agent_type.value} agent shut down")

    async def health_check(self) -> bool:
        return self.initialized

    async def execute_task(self, task: AgentTask) -> AgentResult:
        try:
            task_type = self.task_types(task.type)
        except ValueError:
            return AgentResult.fail(f"Unknown task type: {task.type}")

        payload_model, handler = self._handlers[task_type]
        try:
            payload = payload_model.model_validate(task.payload or {})
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            return AgentResult.fail(f"Invalid payload for {task.type}: {fields}")

        try:
            return await handler(payload)
        except NotFoundError as e:
            log.info(f"{self.agent_type.value}/{task.type}: {e}")
            return AgentResult.fail(str(e))
        except TransientError as e:
            log.warning(f"{self.agent_type.value}/{task.type} transient failure: {e}")
            return AgentResult.fail(str(e), retryable=True)
        except Exception as e:
            log.exception(f"{self.agent_type.value}/{task.type} failed: {e}")
            return AgentResult.fail(str(e))
