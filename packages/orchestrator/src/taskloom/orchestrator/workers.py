"""Worker 注册表与内置 Worker

WorkerRegistry 是跨任务共享的读多写少缓存：
- 能力快照来自 Capability Directory，refresh() 只做增量合并，不使在途计划失效
- Worker 句柄在首次 resolve 时懒加载并缓存；解析失败的 Worker 标记为 not_implemented
"""

import asyncio
from typing import Any

import structlog

from taskloom.core.models import (
    AgentCapability,
    SubtaskStatus,
    UIRequest,
    UITemplateType,
    WorkerAvailability,
    WorkerInstruction,
    WorkerResponse,
)

from .exceptions import WorkerUnavailable
from .protocols import CapabilityDirectory, Worker

log = structlog.get_logger()

MANUAL_INPUT_IMPLEMENTATION = "manual_input"


def _field_label(name: str) -> str:
    return name.replace("_", " ").strip().capitalize()


class ManualInputWorker:
    """总是请求用户输入的 Worker

    根据指令与期望输出生成一个表单请求；expected_output 为 dict 时其键即表单字段。
    """

    def __init__(self, capability: AgentCapability) -> None:
        self._capability = capability

    def skills(self) -> set[str]:
        return set(self._capability.skills)

    async def dispatch(self, instruction: WorkerInstruction) -> WorkerResponse:
        if isinstance(instruction.expected_output, dict) and instruction.expected_output:
            fields = [
                {"name": str(key), "label": _field_label(str(key)), "required": True}
                for key in instruction.expected_output
            ]
        else:
            fields = [{"name": "response", "label": "Response", "required": True}]

        request = UIRequest(
            template_type=UITemplateType.FORM,
            semantic_data={
                "title": instruction.subtask_description or "Information needed",
                "instructions": instruction.instruction,
                "fields": fields,
                "expected_output": instruction.expected_output,
                "success_criteria": instruction.success_criteria,
            },
            context={
                "subtask_id": instruction.subtask_id,
                "worker_id": instruction.worker_id,
                "reason": "manual_input",
            },
        )
        return WorkerResponse(
            status=SubtaskStatus.NEEDS_INPUT,
            ui_requests=[request],
            reasoning=f"{self._capability.name or self._capability.worker_id} collects this input from the user",
        )


def builtin_factories() -> dict[str, Any]:
    """内置 Worker 实现：implementation 标识 -> 工厂"""
    return {MANUAL_INPUT_IMPLEMENTATION: ManualInputWorker}


class WorkerRegistry:
    """Worker 注册表 -- 能力快照缓存 + Worker 句柄缓存"""

    def __init__(self, directory: CapabilityDirectory) -> None:
        self._directory = directory
        self._capabilities: dict[str, AgentCapability] = {}
        self._handles: dict[str, Worker] = {}
        self._unresolvable: set[str] = set()
        self._lock = asyncio.Lock()

    @property
    def directory(self) -> CapabilityDirectory:
        return self._directory

    async def refresh(self) -> dict[str, AgentCapability]:
        """从 Capability Directory 拉取快照并增量合并"""
        async with self._lock:
            latest = await self._directory.list_capabilities()
            added = [wid for wid in latest if wid not in self._capabilities]
            self._capabilities.update(latest)
            for worker_id in self._unresolvable & self._capabilities.keys():
                self._capabilities[worker_id] = self._capabilities[worker_id].model_copy(
                    update={"availability": WorkerAvailability.NOT_IMPLEMENTED}
                )
            if added:
                log.info("worker_registry_extended", added=added, total=len(self._capabilities))
            return dict(self._capabilities)

    def snapshot(self) -> dict[str, AgentCapability]:
        return dict(self._capabilities)

    def can_communicate(self, from_id: str, to_id: str) -> bool:
        return self._directory.can_communicate(from_id, to_id)

    async def get_capability(self, worker_id: str) -> AgentCapability | None:
        """获取能力描述，未命中时刷新一次快照"""
        cap = self._capabilities.get(worker_id)
        if cap is None:
            await self.refresh()
            cap = self._capabilities.get(worker_id)
        return cap

    async def resolve(self, worker_id: str, context_id: str) -> Worker:
        """解析 Worker 句柄

        Raises:
            WorkerUnavailable: 目录中不存在、不可用或无法实例化
        """
        # 可用性每次都按最新快照检查，缓存的句柄不绕过
        cap = await self.get_capability(worker_id)
        if cap is None:
            raise WorkerUnavailable(worker_id, "not declared in capability directory")
        if not cap.is_available:
            raise WorkerUnavailable(worker_id, f"availability is {cap.availability}")

        handle = self._handles.get(worker_id)
        if handle is not None:
            return handle

        try:
            handle = await self._directory.resolve_worker(worker_id, context_id)
        except WorkerUnavailable:
            self.mark_unavailable(worker_id)
            raise

        self._handles[worker_id] = handle
        log.debug("worker_handle_cached", worker_id=worker_id)
        return handle

    def mark_unavailable(
        self,
        worker_id: str,
        availability: WorkerAvailability = WorkerAvailability.NOT_IMPLEMENTED,
    ) -> None:
        self._unresolvable.add(worker_id)
        self._handles.pop(worker_id, None)
        cap = self._capabilities.get(worker_id)
        if cap is not None:
            self._capabilities[worker_id] = cap.model_copy(update={"availability": availability})
        log.warning("worker_marked_unavailable", worker_id=worker_id, availability=str(availability))

    def find_alternative(
        self,
        capability: AgentCapability,
        exclude: set[str] | None = None,
    ) -> AgentCapability | None:
        """查找技能有交集的其他可用 Worker"""
        excluded = {capability.worker_id, *(exclude or set())}
        for cap in self._capabilities.values():
            if cap.worker_id in excluded or not cap.is_available:
                continue
            if cap.skills & capability.skills:
                return cap
        return None
