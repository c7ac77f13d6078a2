"""Taskloom Provider -- Planner 协作方的 LLM 调用层

packages/provider 的公开接口导出。
"""

from .client import LiteLLMClient
from .config import ProviderConfig, load_provider_config
from .echo_adapter import EchoMessageAdapter
from .exceptions import PlannerResponseError, ProviderError, ProxyUnreachableError
from .fallback import FallbackManager
from .models import ModelCallResult, TokenUsage
from .planner import LLMPlanner, extract_json

__all__ = [
    "ModelCallResult",
    "TokenUsage",
    "LiteLLMClient",
    "FallbackManager",
    "EchoMessageAdapter",
    "LLMPlanner",
    "extract_json",
    "ProviderConfig",
    "load_provider_config",
    "ProviderError",
    "ProxyUnreachableError",
    "PlannerResponseError",
]
