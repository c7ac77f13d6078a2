"""用户响应路由

POST /api/tasks/{task_id}/ui-responses: 记录用户对 UI 请求的答复。
答复写入后立即返回 202；没有剩余待答复请求时在后台续跑编排。
"""

from typing import Any

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field
from starlette.responses import JSONResponse
from taskloom.core.exceptions import ContextNotFoundError
from taskloom.core.models import Actor, ActorType
from taskloom.orchestrator import TaskOrchestrator, UIResponseRejected

from ..deps import get_orchestrator
from ..errors import error_response, task_not_found

log = structlog.get_logger()

router = APIRouter()


class UIResponseRequest(BaseModel):
    """UI 请求答复"""

    request_id: str = Field(min_length=1, description="被答复的 UI 请求 ID")
    response: dict[str, Any] = Field(default_factory=dict, description="用户填写的数据")
    user_id: str | None = Field(default=None, description="答复者，缺省为任务所属主体")


class UIResponseAccepted(BaseModel):
    task_id: str
    request_id: str
    status: str
    pending_ui_requests: list[str]
    resumed: bool


async def _resume(orchestrator: TaskOrchestrator, task_id: str) -> None:
    try:
        await orchestrator.orchestrate_task(task_id)
    except Exception as e:
        log.error(
            "resume_after_ui_response_failed",
            context_id=task_id,
            error_type=type(e).__name__,
            error=str(e),
        )


@router.post("/api/tasks/{task_id}/ui-responses", status_code=202)
async def submit_ui_response(
    task_id: str,
    body: UIResponseRequest,
    background_tasks: BackgroundTasks,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
):
    """提交 UI 答复

    - 任务不存在返回 404
    - 请求不存在、已答复或任务已终结返回 409
    """
    actor = Actor(type=ActorType.USER, id=body.user_id) if body.user_id else None
    try:
        context = await orchestrator.submit_ui_response(
            task_id,
            body.request_id,
            body.response,
            actor=actor,
            resume=False,
        )
    except ContextNotFoundError:
        return task_not_found(task_id)
    except UIResponseRejected as e:
        return error_response(409, "UI_RESPONSE_REJECTED", str(e))

    resumed = orchestrator.should_resume(context)
    if resumed:
        background_tasks.add_task(_resume, orchestrator, task_id)

    state = context.current_state
    return JSONResponse(
        status_code=202,
        content=UIResponseAccepted(
            task_id=task_id,
            request_id=body.request_id,
            status=str(state.status),
            pending_ui_requests=list(state.data.get("pending_ui_requests") or []),
            resumed=resumed,
        ).model_dump(),
    )
