"""编排器配置加载测试"""

from taskloom.core.models import TaskFallbackStrategy, WorkerFallbackStrategy
from taskloom.orchestrator import load_orchestrator_config


class TestLoadOrchestratorConfig:
    def test_defaults(self, monkeypatch):
        for name in (
            "TASKLOOM_MIN_BATCH_SIZE",
            "TASKLOOM_TASK_FALLBACK_STRATEGY",
            "TASKLOOM_DISPATCH_TIMEOUT_S",
        ):
            monkeypatch.delenv(name, raising=False)
        config = load_orchestrator_config()
        assert config.disclosure.min_batch_size == 3
        assert config.disclosure.max_user_interruptions == 5
        assert config.resilience.task_fallback_strategy == TaskFallbackStrategy.DEGRADE
        assert config.resilience.default_worker_strategy == WorkerFallbackStrategy.USER_INPUT
        assert config.planning.worker_aliases["ProfileCollector"] == "profile_collection_agent"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("TASKLOOM_DISCLOSURE_ENABLED", "false")
        monkeypatch.setenv("TASKLOOM_BATCHING_STRATEGY", "priority")
        monkeypatch.setenv("TASKLOOM_TASK_FALLBACK_STRATEGY", "guide")
        monkeypatch.setenv("TASKLOOM_DISPATCH_TIMEOUT_S", "2.5")
        config = load_orchestrator_config()
        assert config.disclosure.enabled is False
        assert config.disclosure.batching_strategy == "priority"
        assert config.resilience.task_fallback_strategy == TaskFallbackStrategy.GUIDE
        assert config.resilience.timeout_s == 2.5

    def test_invalid_values_fall_back(self, monkeypatch):
        monkeypatch.setenv("TASKLOOM_MIN_BATCH_SIZE", "0")
        monkeypatch.setenv("TASKLOOM_TASK_FALLBACK_STRATEGY", "panic")
        monkeypatch.setenv("TASKLOOM_MAX_USER_INTERRUPTIONS", "7")
        config = load_orchestrator_config()
        assert config.disclosure.min_batch_size == 3
        assert config.disclosure.max_user_interruptions == 7
        assert config.resilience.task_fallback_strategy == TaskFallbackStrategy.DEGRADE
