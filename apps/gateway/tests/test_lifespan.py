"""FastAPI lifespan 测试 -- 启动装配与关闭清理"""

from pathlib import Path

import pytest
from taskloom.orchestrator import TaskOrchestrator, YamlCapabilityDirectory

AGENTS_DIR = Path(__file__).resolve().parents[3] / "config" / "agents"


@pytest.fixture
def lifespan_env(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("TASKLOOM_DB_PATH", str(tmp_path / "sqlite" / "lifespan.db"))
    monkeypatch.setenv("TASKLOOM_CAPABILITIES_DIR", str(AGENTS_DIR))
    monkeypatch.setenv("TASKLOOM_LLM_MODE", "echo")
    monkeypatch.setenv("LOGFIRE_SEND_TO_LOGFIRE", "false")


class TestLifespan:
    async def test_startup_and_shutdown(self, lifespan_env):
        from taskloom.gateway.main import create_app

        app = create_app()
        async with app.router.lifespan_context(app):
            assert app.state.store_group.conn is not None
            assert isinstance(app.state.orchestrator, TaskOrchestrator)
            assert isinstance(app.state.orchestrator.registry.directory, YamlCapabilityDirectory)
            assert app.state.litellm_client is None
            assert app.state.provider_config.llm_mode == "echo"
            assert app.state.trigger_listener.running
            # 监听器 + SSE 桥接
            assert app.state.store_group.change_feed.subscriber_count() == 2

        assert not app.state.trigger_listener.running
        assert app.state.store_group.change_feed.subscriber_count() == 0
