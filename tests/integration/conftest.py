"""集成测试共享 fixture -- 走真实 lifespan（echo 模式 + 仓库内能力目录）"""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

AGENTS_DIR = Path(__file__).resolve().parents[2] / "config" / "agents"


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "sqlite" / "integration.db"


@pytest.fixture
def gateway_env(db_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("TASKLOOM_DB_PATH", str(db_path))
    monkeypatch.setenv("TASKLOOM_CAPABILITIES_DIR", str(AGENTS_DIR))
    monkeypatch.setenv("TASKLOOM_LLM_MODE", "echo")
    monkeypatch.setenv("LOGFIRE_SEND_TO_LOGFIRE", "false")


@pytest.fixture
def running_gateway(gateway_env):
    """启动一个完整的 gateway 进程（可多次调用以模拟重启）"""

    @asynccontextmanager
    async def _run() -> AsyncGenerator[AsyncClient, None]:
        from taskloom.gateway.main import create_app

        app = create_app()
        async with app.router.lifespan_context(app):
            async with AsyncClient(
                transport=ASGITransport(app=app),
                base_url="http://test",
            ) as ac:
                yield ac

    return _run


@pytest_asyncio.fixture
async def client(running_gateway) -> AsyncGenerator[AsyncClient, None]:
    async with running_gateway() as ac:
        yield ac


@pytest.fixture
def wait_for_status():
    """轮询状态接口直到进入指定状态"""

    async def _wait(client: AsyncClient, task_id: str, *statuses: str, timeout: float = 10.0):
        async with asyncio.timeout(timeout):
            while True:
                resp = await client.get(f"/api/tasks/{task_id}/state")
                if resp.status_code == 200 and resp.json()["state"]["status"] in statuses:
                    return resp.json()["state"]
                await asyncio.sleep(0.02)

    return _wait
