"""Taskloom Orchestrator -- 计划生成、阶段调度、渐进式披露与容错

packages/orchestrator 的公开接口导出。
"""

from .capabilities import StaticCapabilityDirectory, YamlCapabilityDirectory, parse_capability
from .config import (
    DisclosureConfig,
    OrchestratorConfig,
    PlanningConfig,
    ResilienceConfig,
    load_orchestrator_config,
)
from .disclosure import ProgressiveDisclosureBatcher
from .exceptions import (
    InvalidWorkerReference,
    MessageRouteRejected,
    PlanGenerationFailed,
    UIResponseRejected,
    WorkerDispatchFailed,
    WorkerUnavailable,
)
from .goals import are_goals_achieved
from .messaging import AgentMessage, AgentMessageBus, WorkerOutbox
from .orchestrator import TaskOrchestrator
from .plan_generator import PlanGenerator, PlannerResponse
from .protocols import CapabilityDirectory, Planner, PresentationChannel, Worker
from .recovery import TaskRecoveryService
from .resilience import AttemptState, ResilienceController
from .scheduler import PhaseScheduler, derive_phase_status
from .trigger import TaskTriggerListener
from .workers import ManualInputWorker, WorkerRegistry, builtin_factories

__all__ = [
    # 门面
    "TaskOrchestrator",
    "TaskTriggerListener",
    "TaskRecoveryService",
    # 组件
    "PlanGenerator",
    "PlannerResponse",
    "PhaseScheduler",
    "derive_phase_status",
    "ProgressiveDisclosureBatcher",
    "ResilienceController",
    "AttemptState",
    "are_goals_achieved",
    "AgentMessageBus",
    "AgentMessage",
    "WorkerOutbox",
    # Worker 与能力目录
    "WorkerRegistry",
    "ManualInputWorker",
    "builtin_factories",
    "YamlCapabilityDirectory",
    "StaticCapabilityDirectory",
    "parse_capability",
    # 协作方接口
    "Planner",
    "Worker",
    "CapabilityDirectory",
    "PresentationChannel",
    # 配置
    "OrchestratorConfig",
    "DisclosureConfig",
    "ResilienceConfig",
    "PlanningConfig",
    "load_orchestrator_config",
    # 异常
    "PlanGenerationFailed",
    "InvalidWorkerReference",
    "WorkerUnavailable",
    "WorkerDispatchFailed",
    "MessageRouteRejected",
    "UIResponseRejected",
]
