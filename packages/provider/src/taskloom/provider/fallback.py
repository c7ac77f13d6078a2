"""FallbackManager -- 降级管理器

Lazy probe 策略：每次调用时先尝试 primary，失败则切换到 fallback。
不维护显式的"降级状态"标记。

计划生成要求结构化输出，Echo 回声对它没有意义：
调用方可以传 allow_fallback=False，让 primary 的失败直接以 ProviderError 暴露，
由编排器记录为 planner_call_failed 并走静态降级计划。
"""

import structlog

from .exceptions import ProviderError
from .models import ModelCallResult

log = structlog.get_logger()


class FallbackManager:
    """降级管理器

    降级链: LiteLLMClient -> EchoMessageAdapter
    """

    def __init__(self, primary, fallback=None) -> None:
        """
        Args:
            primary: 主 LLM 客户端（LiteLLMClient 或 EchoMessageAdapter）
            fallback: 降级客户端，None 表示无降级
        """
        self._primary = primary
        self._fallback = fallback

    @property
    def has_fallback(self) -> bool:
        return self._fallback is not None

    async def call_with_fallback(
        self,
        messages: list[dict[str, str]],
        model: str = "planner",
        allow_fallback: bool = True,
        **kwargs,
    ) -> ModelCallResult:
        """带降级的 LLM 调用

        Args:
            messages: 消息列表
            model: 模型 group 名称
            allow_fallback: primary 失败时是否允许切换到 fallback
            **kwargs: 传递给 primary.complete() 的额外参数

        Returns:
            ModelCallResult；fallback 成功时 is_fallback=True 并带 fallback_reason

        Raises:
            ProviderError: primary 失败且不允许/没有 fallback，或两者均失败
        """
        try:
            return await self._primary.complete(messages=messages, model=model, **kwargs)
        except Exception as e:
            primary_error = e

        if self._fallback is None or not allow_fallback:
            log.warning(
                "primary_failed_no_fallback",
                model=model,
                error=str(primary_error),
                allow_fallback=allow_fallback,
            )
            raise ProviderError(
                f"Primary 调用失败: {primary_error}",
                recoverable=False,
            ) from primary_error

        log.warning(
            "primary_failed_attempting_fallback",
            error=str(primary_error),
            model=model,
        )
        try:
            result = await self._fallback.complete(messages=messages, model=model)
        except Exception as fallback_error:
            log.error(
                "both_primary_and_fallback_failed",
                primary_error=str(primary_error),
                fallback_error=str(fallback_error),
            )
            raise ProviderError(
                f"Primary 和 Fallback 均失败。Primary: {primary_error}; Fallback: {fallback_error}",
                recoverable=False,
            ) from fallback_error

        log.info("fallback_activated", fallback_reason=str(primary_error), model=model)
        return result.model_copy(
            update={
                "is_fallback": True,
                "fallback_reason": f"Primary 失败: {primary_error}",
            }
        )
