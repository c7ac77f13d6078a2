"""Context Entry Domain Model -- 任务历史中的单条不可变事件

context_entries 表 append-only，不允许更新或删除，更正通过追加新条目完成。
entry_id 使用 ULID 格式，时间有序。
sequence_number 同一 context 内从 1 开始严格单调递增，无空洞。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from .enums import ActorType


class Actor(BaseModel):
    """写入条目的操作者"""

    type: ActorType = Field(description="操作者类型")
    id: str = Field(description="操作者标识，如 worker_id 或 orchestrator")
    version: str = Field(default="1.0.0", description="操作者版本")


class Trigger(BaseModel):
    """条目来源：是哪个外部刺激导致了这条记录"""

    source: str = Field(description="来源类型，如 change_feed / api / recovery")
    reference: str | None = Field(default=None, description="来源引用，如 request_id")
    received_at: datetime | None = Field(default=None, description="刺激到达时间")


class ContextEntry(BaseModel):
    """Context Entry 数据模型

    operation 存储为字符串：已知取值见 enums.Operation，
    未知取值也可反序列化，State Computer 对其做浅合并。
    """

    entry_id: str = Field(description="唯一标识，ULID 格式")
    context_id: str = Field(description="关联的 Task Context ID")
    sequence_number: int = Field(ge=1, description="历史内序号，从 1 开始严格单调递增")
    timestamp: datetime = Field(description="条目时间戳")
    actor: Actor = Field(description="操作者")
    operation: str = Field(description="操作类型")
    data: dict[str, Any] = Field(default_factory=dict, description="操作相关 payload")
    reasoning: str = Field(description="人类可读的记录理由，必填且非空")
    trigger: Trigger | None = Field(default=None, description="来源信息")

    @field_validator("reasoning")
    @classmethod
    def _reasoning_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("reasoning must not be empty")
        return value
