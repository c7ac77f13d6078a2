"""Task Context Domain Model -- 编排工作单元的聚合根

current_state 是 history 的派生值（projection），永远可由 history 重算，
所有状态变化都必须通过追加 Context Entry 触发。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .entry import ContextEntry
from .enums import TERMINAL_STATES, TaskStatus


class ComputedState(BaseModel):
    """由历史回放得到的当前状态"""

    status: TaskStatus = Field(default=TaskStatus.PENDING, description="当前状态")
    phase: str = Field(default="initialization", description="当前阶段名称")
    completeness: int = Field(default=0, ge=0, le=100, description="完成度百分比")
    data: dict[str, Any] = Field(default_factory=dict, description="累积数据")


class TaskContext(BaseModel):
    """Task Context 数据模型

    metadata 为创建时提供的任务定义（goals、description 等），之后不可变。
    template_id 只用于标识任务类别，核心逻辑不对其做任何分支。
    """

    context_id: str = Field(description="唯一标识，ULID 格式")
    template_id: str = Field(description="任务模板标识")
    tenant_id: str = Field(description="所属主体")
    metadata: dict[str, Any] = Field(default_factory=dict, description="任务定义")
    history: list[ContextEntry] = Field(default_factory=list, description="有序条目历史")
    current_state: ComputedState = Field(
        default_factory=ComputedState,
        description="派生状态，非权威数据",
    )
    created_at: datetime = Field(description="创建时间")

    @property
    def last_sequence(self) -> int:
        return self.history[-1].sequence_number if self.history else 0

    @property
    def is_terminal(self) -> bool:
        return self.current_state.status in TERMINAL_STATES
