"""FastAPI 应用主文件

app 创建 + lifespan 管理：
启动时初始化 Store、SSEHub、Planner、能力目录与 TaskOrchestrator，
桥接 ChangeFeed -> SSEHub，启动 task_created 监听器，并在后台恢复孤儿任务；
关闭时依次停止监听器、桥接循环，最后关闭数据库连接。
"""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from taskloom.core.config import get_capabilities_dir, get_db_path
from taskloom.core.store import create_store_group
from taskloom.orchestrator import (
    TaskOrchestrator,
    TaskRecoveryService,
    TaskTriggerListener,
    YamlCapabilityDirectory,
    builtin_factories,
    load_orchestrator_config,
)
from taskloom.provider import (
    EchoMessageAdapter,
    FallbackManager,
    LiteLLMClient,
    LLMPlanner,
    load_provider_config,
)

from .middleware.logging_config import setup_logfire, setup_logging
from .middleware.trace_mw import TraceMiddleware
from .routes import health, stream, tasks, ui
from .services.sse_hub import SSEHub, forward_changes

log = structlog.get_logger()


def _build_planner(app: FastAPI) -> LLMPlanner:
    provider_config = load_provider_config()
    app.state.provider_config = provider_config

    if provider_config.llm_mode == "litellm":
        litellm_client = LiteLLMClient(
            proxy_base_url=provider_config.proxy_base_url,
            proxy_api_key=provider_config.proxy_api_key.get_secret_value(),
            timeout_s=provider_config.timeout_s,
        )
        manager = FallbackManager(primary=litellm_client, fallback=EchoMessageAdapter())
        # 保存 litellm_client 引用供健康检查使用
        app.state.litellm_client = litellm_client
        log.info(
            "planner_initialized",
            mode="litellm",
            proxy_url=provider_config.proxy_base_url,
            planner_model=provider_config.planner_model,
        )
    else:
        # Echo 模式：回声不是合法计划，计划生成总是退化为 fallback 计划
        manager = FallbackManager(primary=EchoMessageAdapter(), fallback=None)
        app.state.litellm_client = None
        log.info("planner_initialized", mode="echo")

    return LLMPlanner(manager, provider_config)


async def _recover(recovery: TaskRecoveryService) -> None:
    try:
        await recovery.recover_orphaned_tasks()
        await recovery.start_pending_tasks()
    except Exception as e:
        log.error("startup_recovery_failed", error_type=type(e).__name__, error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期管理"""
    store_group = await create_store_group(get_db_path())
    app.state.store_group = store_group

    sse_hub = SSEHub()
    app.state.sse_hub = sse_hub

    planner = _build_planner(app)
    directory = YamlCapabilityDirectory(get_capabilities_dir(), builtin_factories())
    orchestrator = TaskOrchestrator(
        store_group,
        directory,
        planner,
        presentation=sse_hub,
        config=load_orchestrator_config(),
    )
    app.state.orchestrator = orchestrator

    feed_queue = store_group.change_feed.subscribe()
    bridge = asyncio.create_task(forward_changes(feed_queue, sse_hub), name="sse-bridge")

    listener = TaskTriggerListener(store_group.change_feed, orchestrator)
    listener.start()
    app.state.trigger_listener = listener

    recovery = asyncio.create_task(
        _recover(TaskRecoveryService(store_group, orchestrator)), name="orphan-recovery"
    )
    log.info("gateway_started", capabilities_dir=str(get_capabilities_dir()))

    yield

    recovery.cancel()
    await listener.stop()
    bridge.cancel()
    await asyncio.gather(recovery, bridge, return_exceptions=True)
    store_group.change_feed.unsubscribe(feed_queue)
    await store_group.close()
    log.info("gateway_stopped")


def create_app() -> FastAPI:
    """创建 FastAPI 应用实例"""
    app = FastAPI(
        title="Taskloom Gateway",
        version="0.1.0",
        description="Taskloom 任务编排 API",
        lifespan=lifespan,
    )

    app.add_middleware(TraceMiddleware)

    setup_logging()
    setup_logfire()

    app.include_router(tasks.router, tags=["tasks"])
    app.include_router(ui.router, tags=["ui"])
    app.include_router(stream.router, tags=["stream"])
    app.include_router(health.router, tags=["health"])

    return app


# 默认 app 实例（uvicorn 入口）
app = create_app()
