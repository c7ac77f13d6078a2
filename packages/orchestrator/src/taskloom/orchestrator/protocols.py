"""协作方 Protocol 接口定义

Planner、Capability Directory、Worker、Presentation Channel 均为外部协作方，
使用 Python Protocol 实现结构化子类型（duck typing）。
"""

from typing import Any, Protocol

from taskloom.core.models import AgentCapability, UIRequest, WorkerInstruction, WorkerResponse


class Planner(Protocol):
    """Planner 协作方 -- best-effort 且可能失败，返回值必须经调用方校验"""

    async def generate_plan(self, prompt_context: dict[str, Any]) -> dict[str, Any] | str:
        """返回 {reasoning, phases} 形状的 JSON（dict 或字符串）"""
        ...

    async def optimize_ordering(self, requests: list[dict[str, Any]]) -> list[str]:
        """返回请求 ID 的推荐顺序"""
        ...

    async def generate_guidance(self, prompt_context: dict[str, Any]) -> list[str]:
        """返回人工完成任务的分步指引"""
        ...


class Worker(Protocol):
    """Worker 调用契约 -- 内部实现对核心不透明"""

    def skills(self) -> set[str]:
        ...

    async def dispatch(self, instruction: WorkerInstruction) -> WorkerResponse | dict[str, Any]:
        ...


class CapabilityDirectory(Protocol):
    """Capability Directory 协作方"""

    async def list_capabilities(self) -> dict[str, AgentCapability]:
        """worker_id -> AgentCapability 快照"""
        ...

    async def resolve_worker(self, worker_id: str, context_id: str) -> Worker:
        """解析出 Worker 实现

        Raises:
            WorkerUnavailable: 未注册实现或实例化失败
        """
        ...

    def can_communicate(self, from_id: str, to_id: str) -> bool:
        """路由表是否允许 from_id 向 to_id 发送消息"""
        ...


class PresentationChannel(Protocol):
    """Presentation Layer 的推送通道，按 context_id 投递 UI 请求批次"""

    async def push(self, context_id: str, requests: list[UIRequest]) -> None:
        ...
