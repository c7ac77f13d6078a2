"""apps/gateway 测试配置 -- 绕过 lifespan 手动装配 app.state

编排不经过 task_created 监听器，测试按需直接调用 orchestrate_task，结果是确定的。
"""

import asyncio
import os
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from taskloom.core.models import AgentCapability, SubtaskStatus, WorkerResponse
from taskloom.core.store import create_store_group
from taskloom.orchestrator import StaticCapabilityDirectory, TaskOrchestrator, builtin_factories


class ScriptedPlanner:
    """返回预置计划的 Planner"""

    def __init__(self) -> None:
        self.plan: dict[str, Any] = {"phases": [_phase("Collect", "collector")]}

    async def generate_plan(self, prompt_context: dict[str, Any]) -> dict[str, Any]:
        return self.plan

    async def optimize_ordering(self, requests: list[dict[str, Any]]) -> list[str]:
        return [r["request_id"] for r in requests]

    async def generate_guidance(self, prompt_context: dict[str, Any]) -> list[str]:
        return ["Fill in the form"]


class CompletingWorker:
    def skills(self) -> set[str]:
        return {"data_collection"}

    async def dispatch(self, instruction) -> WorkerResponse:
        return WorkerResponse(status=SubtaskStatus.COMPLETED, data={"collected": True})


def _phase(name: str, agent: str) -> dict[str, Any]:
    return {
        "name": name,
        "subtasks": [
            {
                "description": f"{name} details",
                "agent": agent,
                "specific_instruction": f"Handle {name.lower()}",
                "expected_output": {"email": ""},
            }
        ],
    }


@pytest.fixture
def planner() -> ScriptedPlanner:
    return ScriptedPlanner()


@pytest.fixture
def manual_plan(planner: ScriptedPlanner) -> None:
    """计划改为需要用户输入的手工子任务"""
    planner.plan = {"phases": [_phase("Collect", "manual")]}


@pytest_asyncio.fixture
async def test_app(tmp_path: Path, planner: ScriptedPlanner):
    """创建测试用 app（手动初始化，绕过 lifespan）"""
    os.environ["LOGFIRE_SEND_TO_LOGFIRE"] = "false"

    from taskloom.gateway.main import create_app
    from taskloom.gateway.services.sse_hub import SSEHub

    app = create_app()
    store_group = await create_store_group(str(tmp_path / "sqlite" / "test.db"))
    sse_hub = SSEHub()
    directory = StaticCapabilityDirectory(
        [
            AgentCapability(worker_id="collector", skills={"data_collection"}),
            AgentCapability(
                worker_id="manual", skills={"manual_input"}, implementation="manual_input"
            ),
        ],
        workers={"collector": CompletingWorker()},
        factories=builtin_factories(),
    )
    app.state.store_group = store_group
    app.state.sse_hub = sse_hub
    app.state.orchestrator = TaskOrchestrator(store_group, directory, planner, presentation=sse_hub)
    app.state.litellm_client = None

    yield app

    await store_group.close()
    os.environ.pop("LOGFIRE_SEND_TO_LOGFIRE", None)


@pytest_asyncio.fixture
async def client(test_app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=test_app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def create_task(client):
    """通过 API 创建任务，返回 task_id"""

    async def _create(**body: Any) -> str:
        resp = await client.post("/api/tasks", json={"template_id": "onboarding", **body})
        assert resp.status_code == 201
        return resp.json()["task_id"]

    return _create


@pytest.fixture
def wait_for_status(test_app):
    async def _wait(task_id: str, *statuses: str, timeout: float = 5.0):
        store_group = test_app.state.store_group
        async with asyncio.timeout(timeout):
            while True:
                state = await store_group.get_computed_state(task_id)
                if state is not None and state.status in statuses:
                    return state
                await asyncio.sleep(0.01)

    return _wait
