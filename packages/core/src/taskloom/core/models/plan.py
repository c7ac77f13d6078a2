"""Execution Plan Domain Model -- 阶段/子任务执行计划

计划一旦记录为 execution_plan_created 条目即不可变；
重新规划产生新的计划，而不是修改旧计划。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Subtask(BaseModel):
    """子任务 -- 绑定到具体 Worker 的一条指令"""

    model_config = ConfigDict(frozen=True)

    subtask_id: str = Field(description="计划内标识，格式 <阶段序号>.<子任务序号>")
    description: str = Field(description="子任务描述")
    assigned_worker_id: str = Field(description="负责执行的 Worker ID")
    instruction: str = Field(default="", description="传给 Worker 的自由文本指令")
    input_data: dict[str, Any] = Field(default_factory=dict, description="输入数据")
    expected_output: Any = Field(default=None, description="期望输出描述")
    success_criteria: list[str] = Field(default_factory=list, description="成功标准")
    required_skills: list[str] = Field(default_factory=list, description="所需技能")


class ExecutionPhase(BaseModel):
    """执行阶段"""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="阶段名称")
    subtasks: list[Subtask] = Field(default_factory=list, description="子任务列表")
    parallel_execution: bool = Field(default=False, description="是否并行执行子任务")
    dependencies: list[str] = Field(default_factory=list, description="依赖的前序阶段名称")


class PlanMetadata(BaseModel):
    """计划元信息"""

    model_config = ConfigDict(frozen=True)

    plan_id: str = Field(description="计划 ID，ULID 格式")
    is_fallback: bool = Field(default=False, description="是否为静态降级计划")
    source: str = Field(default="planner", description="计划来源：planner / fallback")
    corrections: int = Field(default=0, ge=0, description="被修正的 Worker 引用数")
    estimated_duration: str | None = Field(default=None, description="预估耗时")
    user_interactions: str | None = Field(default=None, description="预期的用户交互")
    snapshot_worker_ids: list[str] = Field(
        default_factory=list,
        description="生成计划时 Capability Directory 快照中的 Worker ID",
    )
    created_at: datetime = Field(description="创建时间")


class ExecutionPlan(BaseModel):
    """Execution Plan 数据模型"""

    model_config = ConfigDict(frozen=True)

    phases: list[ExecutionPhase] = Field(description="有序阶段列表")
    reasoning: dict[str, Any] = Field(default_factory=dict, description="规划推理")
    metadata: PlanMetadata = Field(description="计划元信息")

    def worker_ids(self) -> set[str]:
        """计划中引用的全部 Worker ID"""
        return {
            subtask.assigned_worker_id
            for phase in self.phases
            for subtask in phase.subtasks
        }

    def phase_names(self) -> list[str]:
        return [phase.name for phase in self.phases]
