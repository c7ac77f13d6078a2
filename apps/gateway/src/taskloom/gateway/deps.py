"""依赖注入模块 -- 通过 FastAPI Depends 注入 lifespan 中创建的实例"""

from fastapi import Request
from taskloom.core.store import StoreGroup
from taskloom.orchestrator import TaskOrchestrator

from .services.sse_hub import SSEHub


def get_store_group(request: Request) -> StoreGroup:
    """从 app.state 获取 StoreGroup 实例"""
    return request.app.state.store_group


def get_sse_hub(request: Request) -> SSEHub:
    """从 app.state 获取 SSEHub 实例"""
    return request.app.state.sse_hub


def get_orchestrator(request: Request) -> TaskOrchestrator:
    """从 app.state 获取 TaskOrchestrator 实例"""
    return request.app.state.orchestrator
