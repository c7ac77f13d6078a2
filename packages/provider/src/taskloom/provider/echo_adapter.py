"""EchoMessageAdapter -- 离线模式 messages 接口适配

将最后一条 user message 原样回声，返回 ModelCallResult。
回声不是合法的计划 JSON，因此离线模式下编排器总会走到静态降级计划，
UI 请求保持原始顺序。FallbackManager 的降级后备统一使用此适配器。
"""

import asyncio
import time

from .models import ModelCallResult, TokenUsage


class EchoMessageAdapter:
    """complete(messages) -> ModelCallResult 的离线实现"""

    async def complete(
        self,
        messages: list[dict[str, str]],
        model: str = "echo",
        **kwargs,
    ) -> ModelCallResult:
        """通过 Echo 模式处理 messages

        Args:
            messages: 消息列表
            model: 模型名称
            **kwargs: 忽略

        Returns:
            ModelCallResult，provider="echo"
        """
        start_time = time.monotonic()

        user_content = self._extract_last_user_content(messages)

        # 模拟少量延迟
        await asyncio.sleep(0.01)

        response_text = f"Echo: {user_content}"

        # 按 word 简单估算 token
        prompt_tokens = len(user_content.split())
        completion_tokens = len(response_text.split())

        duration_ms = int((time.monotonic() - start_time) * 1000)

        return ModelCallResult(
            content=response_text,
            model=model,
            model_name="echo",
            provider="echo",
            duration_ms=duration_ms,
            token_usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
        )

    @staticmethod
    def _extract_last_user_content(messages: list[dict[str, str]]) -> str:
        """提取最后一条 user message 的 content，无 user 消息时返回最后一条或 "(empty)" """
        for msg in reversed(messages):
            if msg.get("role") == "user":
                return msg.get("content", "")

        if messages:
            return messages[-1].get("content", "(empty)")
        return "(empty)"
