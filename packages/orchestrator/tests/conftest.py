"""packages/orchestrator 测试配置 -- Planner / Presentation 替身与编排器工厂"""

import asyncio
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from taskloom.core.models import AgentCapability, UIRequest, WorkerAvailability
from taskloom.core.store import StoreGroup, create_store_group
from taskloom.orchestrator import (
    OrchestratorConfig,
    StaticCapabilityDirectory,
    TaskOrchestrator,
)


class FakePlanner:
    """可编排的 Planner 替身

    plan / ordering / guidance 为返回值；赋值为异常实例时调用抛出该异常。
    """

    def __init__(self) -> None:
        self.plan: Any = {"phases": []}
        self.ordering: Any = None
        self.guidance: Any = ["Open the form", "Fill in every field"]
        self.plan_calls: list[dict[str, Any]] = []
        self.ordering_calls: list[list[dict[str, Any]]] = []
        self.guidance_calls: list[dict[str, Any]] = []

    async def generate_plan(self, prompt_context: dict[str, Any]) -> Any:
        self.plan_calls.append(prompt_context)
        if isinstance(self.plan, Exception):
            raise self.plan
        return self.plan

    async def optimize_ordering(self, requests: list[dict[str, Any]]) -> list[str]:
        self.ordering_calls.append(requests)
        if isinstance(self.ordering, Exception):
            raise self.ordering
        if self.ordering is None:
            return [r["request_id"] for r in requests]
        return self.ordering(requests) if callable(self.ordering) else self.ordering

    async def generate_guidance(self, prompt_context: dict[str, Any]) -> list[str]:
        self.guidance_calls.append(prompt_context)
        if isinstance(self.guidance, Exception):
            raise self.guidance
        return self.guidance


class RecordingPresentation:
    """记录每次推送的 Presentation Channel"""

    def __init__(self) -> None:
        self.pushes: list[tuple[str, list[UIRequest]]] = []
        self.error: Exception | None = None

    async def push(self, context_id: str, requests: list[UIRequest]) -> None:
        if self.error is not None:
            raise self.error
        self.pushes.append((context_id, list(requests)))


def capability(
    worker_id: str,
    skills: set[str] | None = None,
    availability: WorkerAvailability = WorkerAvailability.AVAILABLE,
    fallback_strategy: str | None = None,
    **kwargs: Any,
) -> AgentCapability:
    return AgentCapability(
        worker_id=worker_id,
        name=worker_id,
        skills=skills or set(),
        availability=availability,
        fallback_strategy=fallback_strategy,
        **kwargs,
    )


def plan_phase(name: str, *agents: str, parallel: bool = False, **subtask_fields: Any) -> dict:
    return {
        "name": name,
        "parallel_execution": parallel,
        "subtasks": [
            {
                "description": f"{name} step {i}",
                "agent": agent,
                "specific_instruction": f"Handle {name.lower()} step {i}",
                **subtask_fields,
            }
            for i, agent in enumerate(agents, start=1)
        ],
    }


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> AsyncGenerator[StoreGroup, None]:
    group = await create_store_group(str(tmp_path / "sqlite" / "orchestrator_test.db"))
    yield group
    await group.close()


@pytest.fixture
def planner() -> FakePlanner:
    return FakePlanner()


@pytest.fixture
def presentation() -> RecordingPresentation:
    return RecordingPresentation()


@pytest.fixture
def make_capability():
    return capability


@pytest.fixture
def make_phase():
    return plan_phase


@pytest.fixture
def make_orchestrator(store, planner, presentation):
    """编排器工厂：capabilities + workers（+ 可选 routes / config）"""

    def _make(
        capabilities: list[AgentCapability],
        workers: dict[str, Any] | None = None,
        *,
        routes: dict[str, list[str]] | None = None,
        config: OrchestratorConfig | None = None,
    ) -> TaskOrchestrator:
        directory = StaticCapabilityDirectory(capabilities, workers=workers, routes=routes)
        return TaskOrchestrator(store, directory, planner, presentation, config=config)

    return _make


@pytest.fixture
def operations(store):
    """读取某个任务历史中的 operation 列表"""

    async def _operations(context_id: str) -> list[str]:
        return [entry.operation for entry in await store.read_history(context_id)]

    return _operations


@pytest.fixture
def wait_for_status(store):
    """轮询派生状态缓存直到进入指定状态"""

    async def _wait(context_id: str, *statuses: str, timeout: float = 5.0):
        async with asyncio.timeout(timeout):
            while True:
                state = await store.get_computed_state(context_id)
                if state is not None and state.status in statuses:
                    return state
                await asyncio.sleep(0.01)

    return _wait
