"""枚举定义 -- 任务状态机、操作类型与执行结果状态

包含 TaskStatus 状态机、Operation 操作类型（封闭集合）、ActorType、
Worker 可用性与降级策略，以及 VALID_TRANSITIONS 合法流转映射和 TERMINAL_STATES 终态集合。
"""

from enum import StrEnum


class TaskStatus(StrEnum):
    """Task 状态机 -- Computed State 的 status 字段"""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    WAITING_FOR_INPUT = "waiting_for_input"

    # 终态
    COMPLETED = "completed"
    FAILED = "failed"


# 合法状态流转
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS, TaskStatus.FAILED},
    TaskStatus.IN_PROGRESS: {
        TaskStatus.WAITING_FOR_INPUT,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
    },
    TaskStatus.WAITING_FOR_INPUT: {
        TaskStatus.IN_PROGRESS,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
    },
    # 终态不可再流转
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
}

TERMINAL_STATES: set[TaskStatus] = {
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
}


class ActorType(StrEnum):
    """操作者类型"""

    SYSTEM = "system"
    USER = "user"
    AGENT = "agent"


class Operation(StrEnum):
    """Context Entry 操作类型 -- 封闭集合

    新增成员时必须同步 payloads.PAYLOAD_MODELS 与 state_computer.REDUCERS，
    测试会校验两者对本枚举的覆盖完整性。
    """

    # 生命周期
    TASK_CREATED = "task_created"
    ORCHESTRATION_STARTED = "orchestration_started"
    TASK_RESUMED = "task_resumed"
    TASK_RECOVERED = "task_recovered"

    # 计划生成审计
    PLANNER_CALL_FAILED = "planner_call_failed"
    PLAN_VALIDATION_FAILED = "plan_validation_failed"
    PLAN_WORKERS_CORRECTED = "plan_workers_corrected"
    EXECUTION_PLAN_CREATED = "execution_plan_created"

    # 阶段 / 子任务
    PHASE_STARTED = "phase_started"
    PHASE_COMPLETED = "phase_completed"
    SUBTASK_DELEGATED = "subtask_delegated"
    SUBTASK_COMPLETED = "subtask_completed"
    SUBTASK_FAILED = "subtask_failed"
    WORKER_SUBSTITUTED = "worker_substituted"
    SUBTASK_DEFERRED = "subtask_deferred"

    # 用户交互
    UI_REQUESTS_CREATED = "ui_requests_created"
    UI_RESPONSE_RECEIVED = "ui_response_received"

    # Worker 间消息
    AGENT_MESSAGE_ROUTED = "agent_message_routed"

    # 数据与状态
    STATUS_UPDATED = "status_updated"
    DATA_COLLECTED = "data_collected"
    GOALS_ACHIEVED = "goals_achieved"

    # 终结
    ORCHESTRATION_FAILED = "orchestration_failed"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"


class WorkerAvailability(StrEnum):
    """Worker 可用性"""

    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"
    NOT_IMPLEMENTED = "not_implemented"


class WorkerFallbackStrategy(StrEnum):
    """单个 Worker 调度失败时的降级策略"""

    USER_INPUT = "user_input"
    ALTERNATIVE_WORKER = "alternative_worker"
    DEFER = "defer"


class TaskFallbackStrategy(StrEnum):
    """任务级失败恢复策略"""

    DEGRADE = "degrade"
    GUIDE = "guide"
    FAIL = "fail"


class SubtaskStatus(StrEnum):
    """Worker 调用结果状态"""

    COMPLETED = "completed"
    NEEDS_INPUT = "needs_input"
    FAILED = "failed"
    DELEGATED = "delegated"


class PhaseStatus(StrEnum):
    """阶段聚合状态，优先级 needs_input > failed > completed"""

    COMPLETED = "completed"
    NEEDS_INPUT = "needs_input"
    FAILED = "failed"


class UITemplateType(StrEnum):
    """面向用户的请求模板类型"""

    SMART_TEXT_INPUT = "smart_text_input"
    FORM = "form"
    STEPPED_WIZARD = "stepped_wizard"
    INSTRUCTION_PANEL = "instruction_panel"
    ERROR_NOTIFICATION = "error_notification"


def validate_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """验证状态流转是否合法

    Args:
        from_status: 当前状态
        to_status: 目标状态

    Returns:
        True 如果流转合法，否则 False
    """
    allowed = VALID_TRANSITIONS.get(from_status, set())
    return to_status in allowed
