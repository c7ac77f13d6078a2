"""执行期数据模型 -- Worker 指令/响应、子任务与阶段结果、UI 请求

Worker 调用契约：dispatch(instruction) -> WorkerResponse，
调度器只依赖这一形状，Worker 内部实现对核心不透明。
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from ulid import ULID

from .enums import PhaseStatus, SubtaskStatus, UITemplateType


def _new_request_id() -> str:
    return str(ULID())


class UIRequest(BaseModel):
    """面向用户的输入请求，由 Presentation Layer 渲染"""

    request_id: str = Field(default_factory=_new_request_id, description="请求 ID，ULID 格式")
    template_type: UITemplateType = Field(description="模板类型")
    semantic_data: dict[str, Any] = Field(default_factory=dict, description="语义数据")
    context: dict[str, Any] = Field(
        default_factory=dict,
        description="来源信息：subtask_id / worker_id / reason / priority",
    )


class WorkerResponse(BaseModel):
    """Worker 调用结果"""

    status: SubtaskStatus = Field(description="结果状态")
    data: dict[str, Any] = Field(default_factory=dict, description="输出数据")
    ui_requests: list[UIRequest] = Field(default_factory=list, description="需要用户处理的请求")
    reasoning: str = Field(default="", description="Worker 的推理说明")


class WorkerInstruction(BaseModel):
    """传给 Worker 的指令

    outbox 为单向消息通道（只能发送），Worker 不直接回调编排器内部。
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    request_id: str = Field(default_factory=_new_request_id, description="调用 ID")
    context_id: str = Field(description="Task Context ID")
    worker_id: str = Field(description="目标 Worker ID")
    subtask_id: str = Field(description="子任务 ID")
    subtask_description: str = Field(default="", description="子任务描述")
    instruction: str = Field(default="", description="自由文本指令")
    input_data: dict[str, Any] = Field(default_factory=dict, description="输入数据")
    context_data: dict[str, Any] = Field(default_factory=dict, description="当前状态数据快照")
    expected_output: Any = Field(default=None, description="期望输出")
    success_criteria: list[str] = Field(default_factory=list, description="成功标准")
    outbox: Any = Field(default=None, exclude=True, description="Worker 消息发送句柄")


class SubtaskResult(BaseModel):
    """子任务执行结果（带计时与元信息包装）"""

    subtask_id: str
    description: str = ""
    worker_id: str
    status: SubtaskStatus
    data: dict[str, Any] = Field(default_factory=dict)
    output_data: dict[str, Any] = Field(
        default_factory=dict,
        description="传递给后续子任务的输出",
    )
    ui_requests: list[UIRequest] = Field(default_factory=list)
    reasoning: str = ""
    duration_ms: int = Field(default=0, ge=0)
    substituted_for: str | None = Field(default=None, description="被替换的原 Worker ID")
    can_proceed: bool = Field(default=False, description="delegated 时阶段是否可继续")


class PhaseResult(BaseModel):
    """阶段执行结果"""

    phase_name: str
    status: PhaseStatus
    results: list[SubtaskResult] = Field(default_factory=list)
    ui_requests: list[UIRequest] = Field(default_factory=list)
    duration_ms: int = Field(default=0, ge=0)
