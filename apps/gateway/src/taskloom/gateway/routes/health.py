"""健康检查路由

GET /health: Liveness 检查，永远返回 200。
GET /ready: Readiness 检查，包含 SQLite 连通性与 WAL 模式、能力目录、磁盘空间，
         profile=llm/full 时探测 LiteLLM Proxy。
"""

import shutil

import structlog
from fastapi import APIRouter, Query, Request
from starlette.responses import JSONResponse
from taskloom.core.store.sqlite_init import verify_wal_mode

log = structlog.get_logger()

router = APIRouter()


@router.get("/health")
async def health():
    """Liveness 检查 -- 永远返回 200"""
    return {"status": "ok"}


@router.get("/ready")
async def ready(
    request: Request,
    profile: str | None = Query(
        default=None,
        description="检查配置文件：core（默认）仅核心检查；llm/full 包含 LiteLLM Proxy 健康检查",
    ),
):
    """Readiness 检查 -- 验证核心依赖可用性

    检查项：
    1. sqlite: 数据库连通性与 WAL 模式
    2. capabilities: 能力目录中已注册的 Worker 数量（0 个不视为失败，计划会退化为 fallback）
    3. disk_space_mb: 磁盘剩余空间
    4. litellm_proxy: 根据 profile 决定是否探测 Proxy
    """
    effective_profile = profile or "core"

    checks: dict = {}
    all_ok = True

    try:
        store_group = request.app.state.store_group
        cursor = await store_group.conn.execute("SELECT 1")
        await cursor.fetchone()
        if await verify_wal_mode(store_group.conn):
            checks["sqlite"] = "ok"
        else:
            checks["sqlite"] = "error: WAL mode not enabled"
            all_ok = False
    except Exception as e:
        checks["sqlite"] = f"error: {str(e)}"
        all_ok = False

    try:
        orchestrator = request.app.state.orchestrator
        snapshot = orchestrator.registry.snapshot()
        checks["capabilities"] = {
            "registered": len(snapshot),
            "available": sum(1 for cap in snapshot.values() if cap.is_available),
        }
    except Exception as e:
        checks["capabilities"] = f"error: {str(e)}"
        all_ok = False

    try:
        disk_usage = shutil.disk_usage("/")
        checks["disk_space_mb"] = disk_usage.free // (1024 * 1024)
    except Exception:
        checks["disk_space_mb"] = 0
        all_ok = False

    if effective_profile in ("llm", "full"):
        litellm_client = getattr(request.app.state, "litellm_client", None)
        if litellm_client is not None:
            try:
                if await litellm_client.health_check():
                    checks["litellm_proxy"] = "ok"
                else:
                    checks["litellm_proxy"] = "unreachable"
                    all_ok = False
            except Exception as e:
                log.warning("health_check_error", error=str(e))
                checks["litellm_proxy"] = "unreachable"
                all_ok = False
        else:
            # Echo 模式：无 litellm_client
            checks["litellm_proxy"] = "skipped"
    else:
        checks["litellm_proxy"] = "skipped"

    status_code = 200 if all_ok else 503
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "ready" if all_ok else "not_ready",
            "profile": effective_profile,
            "checks": checks,
        },
    )
