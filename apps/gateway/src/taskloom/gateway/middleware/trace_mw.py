"""TraceMiddleware -- 请求追踪与请求级日志

每个 HTTP 请求：
- 复用客户端的 X-Request-ID 或生成 ULID，绑定到 structlog contextvars 并写回响应头
- 从 /api/tasks/{context_id}/... 与 /api/stream/task/{context_id} 路径提取任务 ID，
  使请求日志与编排日志可以按 context_id 关联
- 请求结束记录一条 request_completed（含耗时），异常时记录 request_failed 后继续抛出
"""

import time

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from ulid import ULID

# ULID 字符串长度
_CONTEXT_ID_LENGTH = 26

log = structlog.get_logger()


def extract_context_id(path: str) -> str | None:
    parts = path.split("/")
    for i, part in enumerate(parts):
        if part in ("tasks", "task") and i + 1 < len(parts):
            candidate = parts[i + 1]
            if len(candidate) == _CONTEXT_ID_LENGTH:
                return candidate
    return None


class TraceMiddleware(BaseHTTPMiddleware):
    """请求追踪中间件"""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("x-request-id") or str(ULID())
        bound = {"request_id": request_id, "method": request.method, "path": request.url.path}
        context_id = extract_context_id(request.url.path)
        if context_id:
            bound.update(context_id=context_id, trace_id=f"trace-{context_id}")

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(**bound)

        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception as e:
            await log.aerror("request_failed", error_type=type(e).__name__, error=str(e))
            raise

        await log.ainfo(
            "request_completed",
            status_code=response.status_code,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        response.headers["X-Request-ID"] = request_id
        return response
