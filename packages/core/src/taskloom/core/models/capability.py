"""Agent Capability Domain Model -- Capability Directory 中的 Worker 描述"""

from pydantic import BaseModel, Field

from .enums import WorkerAvailability, WorkerFallbackStrategy


class AgentCapability(BaseModel):
    """Worker 能力描述"""

    worker_id: str = Field(description="Worker 唯一标识")
    name: str = Field(default="", description="展示名称")
    role: str = Field(default="", description="角色")
    version: str = Field(default="1.0.0", description="版本")
    description: str = Field(default="", description="能力说明")
    skills: set[str] = Field(default_factory=set, description="技能集合")
    availability: WorkerAvailability = Field(
        default=WorkerAvailability.AVAILABLE,
        description="可用性",
    )
    fallback_strategy: WorkerFallbackStrategy | None = Field(
        default=None,
        description="调度失败时的降级策略，None 表示使用任务级默认值",
    )
    can_receive_from: list[str] = Field(default_factory=list, description="允许的消息来源")
    can_send_to: list[str] = Field(default_factory=list, description="允许的消息目标")
    implementation: str | None = Field(default=None, description="实现标识")

    @property
    def is_available(self) -> bool:
        return self.availability == WorkerAvailability.AVAILABLE
