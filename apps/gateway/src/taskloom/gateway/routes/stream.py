"""SSE 事件流路由

GET /api/stream/task/{task_id}: SSE 实时推送指定任务的条目与 UI 批次。
先订阅再回放历史，回放过的序号在实时阶段跳过，保证不丢不重。
Last-Event-ID 为最后收到的条目序号，用于断线重连；15 秒心跳保活；
task_completed / task_failed 条目携带 final: true 后结束流。
"""

import asyncio
import json

from fastapi import APIRouter, Depends, Request
from sse_starlette.sse import EventSourceResponse
from taskloom.core.config import SSE_HEARTBEAT_INTERVAL
from taskloom.core.models import TERMINAL_STATES, ContextEntry

from ..deps import get_sse_hub, get_store_group
from ..errors import error_response, task_not_found
from ..services.sse_hub import FINAL_OPERATIONS, StreamMessage

router = APIRouter()


def _entry_to_sse(entry: ContextEntry) -> dict:
    final = entry.operation in FINAL_OPERATIONS
    data = {**entry.model_dump(mode="json"), "final": final}
    return {
        "id": str(entry.sequence_number),
        "event": entry.operation,
        "data": json.dumps(data, ensure_ascii=False),
    }


def _message_to_sse(message: StreamMessage) -> dict:
    event = {
        "event": message.event,
        "data": json.dumps({**message.data, "final": message.final}, ensure_ascii=False),
    }
    if message.sequence_number is not None:
        event["id"] = str(message.sequence_number)
    return event


def _parse_last_event_id(raw: str | None) -> int | None:
    if raw is None or raw == "":
        return None
    try:
        value = int(raw)
    except ValueError:
        return -1
    return value if value >= 0 else -1


@router.get("/api/stream/task/{task_id}")
async def stream_task_events(
    task_id: str,
    request: Request,
    store_group=Depends(get_store_group),
    sse_hub=Depends(get_sse_hub),
):
    """SSE 事件流端点

    1. 订阅 SSEHub
    2. 推送历史条目（Last-Event-ID 之后）
    3. 实时推送新条目与 UI 批次
    4. 终态条目携带 final: true 并结束
    """
    if await store_group.context_store.get_context(task_id) is None:
        return task_not_found(task_id)

    last_event_id = _parse_last_event_id(request.headers.get("last-event-id"))
    if last_event_id == -1:
        return error_response(
            400, "INVALID_LAST_EVENT_ID", "Last-Event-ID must be a non-negative sequence number"
        )

    async def event_generator():
        queue = await sse_hub.subscribe(task_id)
        try:
            history = await store_group.read_history_after(task_id, last_event_id or 0)
            last_sent = last_event_id or 0
            for entry in history:
                yield _entry_to_sse(entry)
                last_sent = entry.sequence_number
                if entry.operation in FINAL_OPERATIONS:
                    return

            # 重连时终态条目可能已在 Last-Event-ID 之前送达
            state = await store_group.get_computed_state(task_id)
            if state is not None and state.status in TERMINAL_STATES:
                return

            while True:
                try:
                    message: StreamMessage = await asyncio.wait_for(
                        queue.get(), timeout=SSE_HEARTBEAT_INTERVAL
                    )
                except TimeoutError:
                    yield {"comment": "heartbeat"}
                    continue

                if message.sequence_number is not None:
                    if message.sequence_number <= last_sent:
                        continue
                    last_sent = message.sequence_number
                yield _message_to_sse(message)
                if message.final:
                    return
        finally:
            await sse_hub.unsubscribe(task_id, queue)

    return EventSourceResponse(event_generator())
