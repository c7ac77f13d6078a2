"""Taskloom Core Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .capability import AgentCapability
from .context import ComputedState, TaskContext
from .entry import Actor, ContextEntry, Trigger
from .enums import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    ActorType,
    Operation,
    PhaseStatus,
    SubtaskStatus,
    TaskFallbackStrategy,
    TaskStatus,
    UITemplateType,
    WorkerAvailability,
    WorkerFallbackStrategy,
    validate_transition,
)
from .execution import (
    PhaseResult,
    SubtaskResult,
    UIRequest,
    WorkerInstruction,
    WorkerResponse,
)
from .payloads import PAYLOAD_MODELS
from .plan import ExecutionPhase, ExecutionPlan, PlanMetadata, Subtask

__all__ = [
    # 枚举
    "TaskStatus",
    "ActorType",
    "Operation",
    "WorkerAvailability",
    "WorkerFallbackStrategy",
    "TaskFallbackStrategy",
    "SubtaskStatus",
    "PhaseStatus",
    "UITemplateType",
    # 状态机
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "validate_transition",
    # Context
    "TaskContext",
    "ComputedState",
    # Entry
    "ContextEntry",
    "Actor",
    "Trigger",
    # Plan
    "ExecutionPlan",
    "ExecutionPhase",
    "PlanMetadata",
    "Subtask",
    # Capability
    "AgentCapability",
    # Execution
    "UIRequest",
    "WorkerInstruction",
    "WorkerResponse",
    "SubtaskResult",
    "PhaseResult",
    # Payloads
    "PAYLOAD_MODELS",
]
