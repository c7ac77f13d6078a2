"""ProviderConfig -- Provider 配置加载

从环境变量加载配置，不硬编码 provider/模型名。
"""

import os
from typing import Literal

import structlog
from pydantic import BaseModel, Field, SecretStr

log = structlog.get_logger()


class ProviderConfig(BaseModel):
    """Provider 包配置 -- 从环境变量加载

    环境变量:
        LITELLM_PROXY_URL: Proxy 地址（默认 http://localhost:4000）
        LITELLM_PROXY_KEY: Proxy 访问密钥
        TASKLOOM_LLM_MODE: LLM 运行模式（litellm/echo）
        TASKLOOM_LLM_TIMEOUT_S: 调用超时（秒，默认 30）
        TASKLOOM_PLANNER_MODEL: 计划生成使用的模型 group
        TASKLOOM_OPTIMIZER_MODEL: UI 请求排序与指引生成使用的模型 group
    """

    proxy_base_url: str = Field(
        default="http://localhost:4000",
        description="LiteLLM Proxy 基础 URL",
    )
    proxy_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="Proxy 访问密钥（不是 LLM provider API key）",
    )
    llm_mode: Literal["litellm", "echo"] = Field(
        default="litellm",
        description="LLM 运行模式：litellm / echo",
    )
    timeout_s: int = Field(
        default=30,
        ge=1,
        description="LLM 调用超时（秒）",
    )
    planner_model: str = Field(default="planner", description="计划生成模型 group")
    optimizer_model: str = Field(default="cheap", description="排序/指引模型 group")
    planner_temperature: float = Field(default=0.2, ge=0.0, le=2.0)


def load_provider_config() -> ProviderConfig:
    """从环境变量加载 Provider 配置

    非法取值记录 warning 并使用默认值，不阻塞启动。

    Returns:
        ProviderConfig 实例
    """
    kwargs: dict = {}

    if val := os.environ.get("LITELLM_PROXY_URL"):
        kwargs["proxy_base_url"] = val

    if val := os.environ.get("LITELLM_PROXY_KEY"):
        kwargs["proxy_api_key"] = SecretStr(val)

    if val := os.environ.get("TASKLOOM_LLM_MODE"):
        if val in ("litellm", "echo"):
            kwargs["llm_mode"] = val
        else:
            log.warning(
                "invalid_llm_mode_config",
                env_var="TASKLOOM_LLM_MODE",
                value=val,
                fallback="litellm",
            )

    if val := os.environ.get("TASKLOOM_LLM_TIMEOUT_S"):
        try:
            kwargs["timeout_s"] = int(val)
        except ValueError:
            log.warning(
                "invalid_timeout_config",
                env_var="TASKLOOM_LLM_TIMEOUT_S",
                value=val,
                fallback=30,
            )

    if val := os.environ.get("TASKLOOM_PLANNER_MODEL"):
        kwargs["planner_model"] = val

    if val := os.environ.get("TASKLOOM_OPTIMIZER_MODEL"):
        kwargs["optimizer_model"] = val

    return ProviderConfig(**kwargs)
