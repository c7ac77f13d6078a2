"""OrchestratorConfig -- 编排器配置加载

渐进式披露、容错策略、计划修正三组配置，均可通过环境变量覆盖。
"""

import os
from typing import Literal

import structlog
from pydantic import BaseModel, Field, ValidationError

from taskloom.core.models import TaskFallbackStrategy, WorkerFallbackStrategy

log = structlog.get_logger()

# Planner 常见的旧 Worker 名称 -> 能力目录中的 worker_id
DEFAULT_WORKER_ALIASES: dict[str, str] = {
    "ProfileCollector": "profile_collection_agent",
    "TaskCoordinatorAgent": "orchestrator_agent",
    "BusinessDiscoveryAgent": "data_collection_agent",
    "DataEnrichmentAgent": "data_collection_agent",
    "ComplianceVerificationAgent": "legal_compliance_agent",
    "FormOptimizerAgent": "ux_optimization_agent",
    "CelebrationAgent": "celebration_agent",
    "MonitoringAgent": "monitoring_agent",
    "AchievementTracker": "celebration_agent",
    "PaymentAgent": "payment_agent",
    "CommunicationAgent": "communication_agent",
    "AgencyInteractionAgent": "agency_interaction_agent",
    "EntityComplianceAgent": "entity_compliance_agent",
}


class DisclosureConfig(BaseModel):
    """渐进式披露（UI 请求批处理）配置"""

    enabled: bool = Field(default=True, description="关闭时 UI 请求立即下发")
    batching_strategy: Literal["intelligent", "sequential", "priority"] = Field(
        default="intelligent",
        description="批内排序策略：intelligent 交给 Planner 排序",
    )
    min_batch_size: int = Field(default=3, ge=1, description="触发下发的最小批量")
    max_user_interruptions: int = Field(
        default=5,
        ge=1,
        description="单任务最多打断用户的批次数",
    )


class ResilienceConfig(BaseModel):
    """容错配置"""

    task_fallback_strategy: TaskFallbackStrategy = Field(
        default=TaskFallbackStrategy.DEGRADE,
        description="任务级失败策略",
    )
    default_worker_strategy: WorkerFallbackStrategy = Field(
        default=WorkerFallbackStrategy.USER_INPUT,
        description="Worker 未声明降级策略时的默认值",
    )
    max_retries: int = Field(default=1, ge=0, description="调度异常的重试次数")
    timeout_s: float = Field(default=30, gt=0, description="单次调度超时（秒）")


class PlanningConfig(BaseModel):
    """计划生成与 Worker 修正配置"""

    worker_aliases: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_WORKER_ALIASES),
        description="Worker 别名表",
    )
    fallback_worker_id: str = Field(
        default="profile_collection_agent",
        description="降级计划优先绑定的 Worker",
    )
    fallback_skills: list[str] = Field(
        default_factory=lambda: ["manual_input", "form_generation", "user_guidance"],
        description="降级计划备选 Worker 需具备的技能之一",
    )


class OrchestratorConfig(BaseModel):
    """编排器配置

    环境变量:
        TASKLOOM_DISCLOSURE_ENABLED: 是否启用批处理（true/false）
        TASKLOOM_BATCHING_STRATEGY: intelligent / sequential / priority
        TASKLOOM_MIN_BATCH_SIZE: 最小批量
        TASKLOOM_MAX_USER_INTERRUPTIONS: 最大打断次数
        TASKLOOM_TASK_FALLBACK_STRATEGY: degrade / guide / fail
        TASKLOOM_WORKER_FALLBACK_STRATEGY: user_input / alternative_worker / defer
        TASKLOOM_DISPATCH_MAX_RETRIES: 调度重试次数
        TASKLOOM_DISPATCH_TIMEOUT_S: 调度超时（秒）
        TASKLOOM_FALLBACK_WORKER_ID: 降级计划 Worker
    """

    version: str = Field(default="1.0.0", description="编排器版本，写入 orchestration_started")
    disclosure: DisclosureConfig = Field(default_factory=DisclosureConfig)
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)
    planning: PlanningConfig = Field(default_factory=PlanningConfig)
    message_queue_size: int = Field(default=100, ge=1, description="单任务 Worker 消息队列容量")


_ENV_FIELDS: dict[str, tuple[str, str]] = {
    "TASKLOOM_DISCLOSURE_ENABLED": ("disclosure", "enabled"),
    "TASKLOOM_BATCHING_STRATEGY": ("disclosure", "batching_strategy"),
    "TASKLOOM_MIN_BATCH_SIZE": ("disclosure", "min_batch_size"),
    "TASKLOOM_MAX_USER_INTERRUPTIONS": ("disclosure", "max_user_interruptions"),
    "TASKLOOM_TASK_FALLBACK_STRATEGY": ("resilience", "task_fallback_strategy"),
    "TASKLOOM_WORKER_FALLBACK_STRATEGY": ("resilience", "default_worker_strategy"),
    "TASKLOOM_DISPATCH_MAX_RETRIES": ("resilience", "max_retries"),
    "TASKLOOM_DISPATCH_TIMEOUT_S": ("resilience", "timeout_s"),
    "TASKLOOM_FALLBACK_WORKER_ID": ("planning", "fallback_worker_id"),
}

_SECTION_MODELS: dict[str, type[BaseModel]] = {
    "disclosure": DisclosureConfig,
    "resilience": ResilienceConfig,
    "planning": PlanningConfig,
}


def load_orchestrator_config() -> OrchestratorConfig:
    """从环境变量加载编排器配置

    逐项校验：非法取值记录 warning 并保留默认值，不阻塞启动。
    """
    sections: dict[str, dict] = {name: {} for name in _SECTION_MODELS}

    for env_var, (section, field) in _ENV_FIELDS.items():
        val = os.environ.get(env_var)
        if val is None or val == "":
            continue
        candidate = {**sections[section], field: val}
        try:
            _SECTION_MODELS[section].model_validate(candidate)
        except ValidationError:
            default = _SECTION_MODELS[section].model_fields[field].get_default(
                call_default_factory=True
            )
            log.warning(
                "invalid_orchestrator_config",
                env_var=env_var,
                value=val,
                fallback=str(default),
            )
            continue
        sections[section] = candidate

    return OrchestratorConfig(
        **{name: model.model_validate(sections[name]) for name, model in _SECTION_MODELS.items()}
    )
