"""任务路由

POST /api/tasks: 创建任务（写入 task_created 条目，编排由 ChangeFeed 触发）。
GET /api/tasks: 任务列表查询，支持 status 筛选。
GET /api/tasks/{task_id}: 任务详情，含完整条目历史与当前状态。
GET /api/tasks/{task_id}/state: 当前状态，或 at_sequence 指定序号时刻的状态。
"""

from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from starlette.responses import JSONResponse
from taskloom.core.exceptions import ContextNotFoundError
from taskloom.core.models import Actor, ActorType, TaskContext, Trigger
from taskloom.orchestrator import TaskOrchestrator

from ..deps import get_orchestrator, get_store_group
from ..errors import task_not_found

router = APIRouter()


class CreateTaskRequest(BaseModel):
    """任务创建请求体"""

    template_id: str = Field(min_length=1, description="任务模板标识")
    tenant_id: str = Field(default="default", description="所属主体")
    title: str = Field(default="", description="任务标题")
    description: str = Field(default="", description="任务描述，交给 Planner 作为上下文")
    goals: list[str] | dict[str, Any] | None = Field(
        default=None,
        description='字符串列表或 {"primary": [...]} 结构化目标',
    )
    initial_data: dict[str, Any] = Field(default_factory=dict, description="初始数据")
    required_fields: list[str] = Field(default_factory=list, description="用于计算完成度的字段")
    metadata: dict[str, Any] = Field(default_factory=dict, description="其他任务定义字段")


class CreateTaskResponse(BaseModel):
    task_id: str
    status: str
    sequence_number: int


class TaskSummary(BaseModel):
    """任务摘要（列表项）"""

    task_id: str
    template_id: str
    tenant_id: str
    title: str
    status: str
    phase: str
    completeness: int
    created_at: str


class TaskListResponse(BaseModel):
    tasks: list[TaskSummary]


def _summary(context: TaskContext) -> TaskSummary:
    state = context.current_state
    return TaskSummary(
        task_id=context.context_id,
        template_id=context.template_id,
        tenant_id=context.tenant_id,
        title=str(context.metadata.get("title", "")),
        status=str(state.status),
        phase=state.phase,
        completeness=state.completeness,
        created_at=context.created_at.isoformat(),
    )


@router.post("/api/tasks", status_code=201, response_model=CreateTaskResponse)
async def create_task(
    body: CreateTaskRequest,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
):
    """创建任务，返回 201；编排在后台由 task_created 通知启动"""
    metadata = {
        **body.metadata,
        "title": body.title,
        "description": body.description,
        "goals": body.goals,
        "initial_data": body.initial_data,
        "required_fields": body.required_fields,
    }
    request_id = structlog.contextvars.get_contextvars().get("request_id")
    context = await orchestrator.create_task(
        body.template_id,
        body.tenant_id,
        metadata,
        actor=Actor(type=ActorType.USER, id=body.tenant_id),
        trigger=Trigger(source="api", reference=request_id, received_at=datetime.now(UTC)),
    )
    return CreateTaskResponse(
        task_id=context.context_id,
        status=str(context.current_state.status),
        sequence_number=context.last_sequence,
    )


@router.get("/api/tasks", response_model=TaskListResponse)
async def list_tasks(
    status: str | None = Query(default=None, description="按状态筛选"),
    store_group=Depends(get_store_group),
):
    """查询任务列表，支持按状态筛选"""
    contexts = await store_group.list_contexts(status)
    return TaskListResponse(tasks=[_summary(c) for c in contexts])


@router.get("/api/tasks/{task_id}")
async def get_task_detail(
    task_id: str,
    store_group=Depends(get_store_group),
):
    """查询任务详情：任务定义、由历史重算的当前状态、完整条目历史"""
    context = await store_group.get_context(task_id)
    if context is None:
        return task_not_found(task_id)

    return {
        "task": {
            **_summary(context).model_dump(),
            "metadata": context.metadata,
        },
        "state": context.current_state.model_dump(mode="json"),
        "entries": [e.model_dump(mode="json") for e in context.history],
    }


@router.get("/api/tasks/{task_id}/state")
async def get_task_state(
    task_id: str,
    at_sequence: int | None = Query(
        default=None,
        ge=0,
        description="返回该序号（含）时刻的状态；缺省为当前状态",
    ),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
):
    """状态查询，at_sequence 支持时间旅行"""
    try:
        if at_sequence is None:
            context = await orchestrator.load_context(task_id)
            state = context.current_state
            sequence = context.last_sequence
        else:
            state = await orchestrator.get_state_at_sequence(task_id, at_sequence)
            sequence = at_sequence
    except ContextNotFoundError:
        return task_not_found(task_id)

    return JSONResponse(
        content={
            "task_id": task_id,
            "at_sequence": sequence,
            "state": state.model_dump(mode="json"),
        }
    )
