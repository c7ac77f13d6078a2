"""Context Entry Payload 子类型

每个 Operation 对应一个结构化 payload 模型，PAYLOAD_MODELS 覆盖全部枚举成员。
新增字段必须带默认值，确保旧条目可正常反序列化。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .enums import Operation, PhaseStatus, SubtaskStatus, TaskStatus
from .execution import UIRequest
from .plan import ExecutionPlan


class TaskCreatedPayload(BaseModel):
    """task_created 条目 payload"""

    template_id: str
    tenant_id: str
    title: str = Field(default="")
    initial_data: dict[str, Any] = Field(default_factory=dict, description="初始数据")
    required_fields: list[str] = Field(
        default_factory=list,
        description="完成度计算使用的必填数据路径（点号分隔）",
    )


class OrchestrationStartedPayload(BaseModel):
    """orchestration_started 条目 payload"""

    orchestrator_version: str
    available_workers: list[str] = Field(default_factory=list)


class TaskResumedPayload(BaseModel):
    """task_resumed 条目 payload"""

    from_status: TaskStatus
    resume_phase: str | None = Field(default=None)
    pending_ui_requests: int = Field(default=0)


class TaskRecoveredPayload(BaseModel):
    """task_recovered 条目 payload"""

    reason: str
    recovered_at: datetime
    last_sequence: int = Field(default=0)
    previous_phase: str = Field(default="")


class PlannerCallFailedPayload(BaseModel):
    """planner_call_failed 条目 payload"""

    error_type: str
    error_message: str


class PlanValidationFailedPayload(BaseModel):
    """plan_validation_failed 条目 payload"""

    errors: list[str] = Field(default_factory=list)
    response_excerpt: str = Field(default="", description="Planner 响应摘要（截断）")


class WorkerCorrection(BaseModel):
    """单条 Worker 引用修正"""

    subtask_id: str
    original_worker_id: str
    corrected_worker_id: str
    method: str = Field(description="alias / skill_overlap / first_available")


class PlanWorkersCorrectedPayload(BaseModel):
    """plan_workers_corrected 条目 payload"""

    corrections: list[WorkerCorrection] = Field(default_factory=list)


class ExecutionPlanCreatedPayload(BaseModel):
    """execution_plan_created 条目 payload"""

    plan: ExecutionPlan
    reasoning: dict[str, Any] = Field(default_factory=dict)


class PhaseStartedPayload(BaseModel):
    """phase_started 条目 payload"""

    phase_name: str
    phase_index: int
    subtask_count: int
    parallel_execution: bool = Field(default=False)


class PhaseCompletedPayload(BaseModel):
    """phase_completed 条目 payload"""

    phase_name: str
    phase_index: int
    status: PhaseStatus
    completed: int = Field(default=0)
    failed: int = Field(default=0)
    needs_input: int = Field(default=0)
    delegated: int = Field(default=0)
    duration_ms: int = Field(default=0)


class SubtaskDelegatedPayload(BaseModel):
    """subtask_delegated 条目 payload"""

    subtask_id: str
    phase_name: str
    worker_id: str
    description: str = Field(default="")
    instruction: str = Field(default="")
    request_id: str = Field(default="")


class SubtaskCompletedPayload(BaseModel):
    """subtask_completed 条目 payload"""

    subtask_id: str
    phase_name: str
    worker_id: str
    status: SubtaskStatus = Field(default=SubtaskStatus.COMPLETED)
    output_data: dict[str, Any] = Field(default_factory=dict)
    duration_ms: int = Field(default=0)
    substituted_for: str | None = Field(default=None)


class SubtaskFailedPayload(BaseModel):
    """subtask_failed 条目 payload"""

    subtask_id: str
    phase_name: str
    worker_id: str
    attempt_state: str = Field(description="unavailable / failed")
    error_type: str = Field(default="")
    error_message: str = Field(default="")
    strategy: str = Field(default="", description="应用的降级策略")


class WorkerSubstitutedPayload(BaseModel):
    """worker_substituted 条目 payload"""

    subtask_id: str
    phase_name: str
    original_worker_id: str
    substitute_worker_id: str
    shared_skills: list[str] = Field(default_factory=list)


class SubtaskDeferredPayload(BaseModel):
    """subtask_deferred 条目 payload"""

    subtask_id: str
    phase_name: str
    worker_id: str
    reason: str = Field(default="")
    can_proceed: bool = Field(default=True)


class UIBatchSummary(BaseModel):
    """UI 请求批次摘要"""

    count: int
    types: list[str] = Field(default_factory=list)
    request_ids: list[str] = Field(default_factory=list)


class UIRequestsCreatedPayload(BaseModel):
    """ui_requests_created 条目 payload"""

    ui_requests: list[UIRequest]
    summary: UIBatchSummary
    batch_index: int = Field(default=1)
    ordering: str = Field(default="original", description="optimized / original / priority")


class UIResponseReceivedPayload(BaseModel):
    """ui_response_received 条目 payload"""

    request_id: str
    response: dict[str, Any] = Field(default_factory=dict)


class AgentMessageRoutedPayload(BaseModel):
    """agent_message_routed 条目 payload"""

    message_id: str
    from_worker_id: str
    to_worker_id: str
    message_type: str = Field(default="message")
    content: dict[str, Any] = Field(default_factory=dict)


class StatusUpdatedPayload(BaseModel):
    """status_updated 条目 payload"""

    from_status: TaskStatus
    to_status: TaskStatus
    reason: str = Field(default="")


class DataCollectedPayload(BaseModel):
    """data_collected 条目 payload"""

    data: dict[str, Any] = Field(default_factory=dict)
    source: str = Field(default="")


class GoalsAchievedPayload(BaseModel):
    """goals_achieved 条目 payload"""

    goals: list[str] = Field(default_factory=list)
    skipped_phases: list[str] = Field(default_factory=list)


class OrchestrationFailedPayload(BaseModel):
    """orchestration_failed 条目 payload"""

    error_type: str
    error_message: str
    strategy: str


class TaskCompletedPayload(BaseModel):
    """task_completed 条目 payload"""

    completed_phases: list[str] = Field(default_factory=list)
    goals_achieved: bool = Field(default=False)


class TaskFailedPayload(BaseModel):
    """task_failed 条目 payload"""

    error: str
    error_type: str = Field(default="")
    phase: str | None = Field(default=None)


PAYLOAD_MODELS: dict[Operation, type[BaseModel]] = {
    Operation.TASK_CREATED: TaskCreatedPayload,
    Operation.ORCHESTRATION_STARTED: OrchestrationStartedPayload,
    Operation.TASK_RESUMED: TaskResumedPayload,
    Operation.TASK_RECOVERED: TaskRecoveredPayload,
    Operation.PLANNER_CALL_FAILED: PlannerCallFailedPayload,
    Operation.PLAN_VALIDATION_FAILED: PlanValidationFailedPayload,
    Operation.PLAN_WORKERS_CORRECTED: PlanWorkersCorrectedPayload,
    Operation.EXECUTION_PLAN_CREATED: ExecutionPlanCreatedPayload,
    Operation.PHASE_STARTED: PhaseStartedPayload,
    Operation.PHASE_COMPLETED: PhaseCompletedPayload,
    Operation.SUBTASK_DELEGATED: SubtaskDelegatedPayload,
    Operation.SUBTASK_COMPLETED: SubtaskCompletedPayload,
    Operation.SUBTASK_FAILED: SubtaskFailedPayload,
    Operation.WORKER_SUBSTITUTED: WorkerSubstitutedPayload,
    Operation.SUBTASK_DEFERRED: SubtaskDeferredPayload,
    Operation.UI_REQUESTS_CREATED: UIRequestsCreatedPayload,
    Operation.UI_RESPONSE_RECEIVED: UIResponseReceivedPayload,
    Operation.AGENT_MESSAGE_ROUTED: AgentMessageRoutedPayload,
    Operation.STATUS_UPDATED: StatusUpdatedPayload,
    Operation.DATA_COLLECTED: DataCollectedPayload,
    Operation.GOALS_ACHIEVED: GoalsAchievedPayload,
    Operation.ORCHESTRATION_FAILED: OrchestrationFailedPayload,
    Operation.TASK_COMPLETED: TaskCompletedPayload,
    Operation.TASK_FAILED: TaskFailedPayload,
}
