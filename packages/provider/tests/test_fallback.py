"""FallbackManager 单元测试

primary 成功不触发 fallback；primary 失败时切换 fallback（is_fallback=True）；
allow_fallback=False 或无 fallback 时直接抛 ProviderError；双方失败抛 ProviderError。
"""

from unittest.mock import AsyncMock

import pytest
from taskloom.provider.exceptions import ProviderError, ProxyUnreachableError
from taskloom.provider.fallback import FallbackManager
from taskloom.provider.models import ModelCallResult


def _make_result(content: str = "ok") -> ModelCallResult:
    return ModelCallResult(
        content=content,
        model="planner",
        model_name="gpt-4o",
        provider="openai",
        duration_ms=100,
    )


@pytest.fixture
def mock_primary():
    client = AsyncMock()
    client.complete = AsyncMock(return_value=_make_result("primary response"))
    return client


@pytest.fixture
def mock_fallback():
    adapter = AsyncMock()
    adapter.complete = AsyncMock(return_value=_make_result("echo response"))
    return adapter


MESSAGES = [{"role": "user", "content": "test"}]


class TestFallbackManager:
    """降级链路"""

    async def test_primary_success_no_fallback(self, mock_primary, mock_fallback):
        """Primary 成功时不调用 fallback"""
        fm = FallbackManager(primary=mock_primary, fallback=mock_fallback)

        result = await fm.call_with_fallback(MESSAGES, model="planner")

        assert result.content == "primary response"
        assert result.is_fallback is False
        mock_fallback.complete.assert_not_called()

    async def test_primary_failure_uses_fallback(self, mock_primary, mock_fallback):
        """Primary 失败时切换到 fallback 并标记原因"""
        mock_primary.complete.side_effect = ProxyUnreachableError(
            "http://localhost:4000", ConnectionError("refused")
        )
        fm = FallbackManager(primary=mock_primary, fallback=mock_fallback)

        result = await fm.call_with_fallback(MESSAGES)

        assert result.content == "echo response"
        assert result.is_fallback is True
        assert "refused" in result.fallback_reason

    async def test_fallback_disallowed(self, mock_primary, mock_fallback):
        """allow_fallback=False 时 primary 的失败直接暴露"""
        mock_primary.complete.side_effect = RuntimeError("boom")
        fm = FallbackManager(primary=mock_primary, fallback=mock_fallback)

        with pytest.raises(ProviderError):
            await fm.call_with_fallback(MESSAGES, allow_fallback=False)
        mock_fallback.complete.assert_not_called()

    async def test_no_fallback_configured(self, mock_primary):
        mock_primary.complete.side_effect = RuntimeError("boom")
        fm = FallbackManager(primary=mock_primary)

        assert fm.has_fallback is False
        with pytest.raises(ProviderError):
            await fm.call_with_fallback(MESSAGES)

    async def test_both_fail(self, mock_primary, mock_fallback):
        """双方均失败抛 ProviderError"""
        mock_primary.complete.side_effect = RuntimeError("primary down")
        mock_fallback.complete.side_effect = RuntimeError("echo down")
        fm = FallbackManager(primary=mock_primary, fallback=mock_fallback)

        with pytest.raises(ProviderError) as exc_info:
            await fm.call_with_fallback(MESSAGES)
        assert "primary down" in str(exc_info.value)
        assert "echo down" in str(exc_info.value)

    async def test_lazy_probe_recovers(self, mock_primary, mock_fallback):
        """没有降级状态：primary 恢复后下一次调用直接走 primary"""
        mock_primary.complete.side_effect = [RuntimeError("blip"), _make_result("back")]
        fm = FallbackManager(primary=mock_primary, fallback=mock_fallback)

        first = await fm.call_with_fallback(MESSAGES)
        second = await fm.call_with_fallback(MESSAGES)

        assert first.is_fallback is True
        assert second.content == "back"
        assert second.is_fallback is False
