"""Procurement agents — scout (prices), strategist (forecasts), diplomat (negotiation)."""

from .diplomat import DiplomatAgent  # noqa: F401
from .scout import ScoutAgent  # noqa: F401
from .strategist import StrategistAgent  # noqa: F401
from .types import (  # noqa: F401
    TASK_TYPES,
    AgentResult,
    AgentTask,
    AgentType,
    BaseAgent,
    DiplomatTaskType,
    ScoutTaskType,
    StrategistTaskType,
)
