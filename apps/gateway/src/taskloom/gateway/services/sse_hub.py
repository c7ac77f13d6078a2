"""SSEHub -- 内存中事件广播器，同时是编排器的 Presentation Channel

两类消息进入同一个按任务划分的订阅队列：
- 条目：由 ChangeFeed 桥接转发，每条已提交的 ContextEntry 一条消息
- UI 批次：ProgressiveDisclosureBatcher 释放批次时调用 push()

队列已满的订阅者被移除（慢客户端可用 Last-Event-ID 重连补齐历史）。
"""

import asyncio
from collections import defaultdict
from typing import Any

import structlog
from pydantic import BaseModel, Field

from taskloom.core.models import Operation, UIRequest
from taskloom.core.store.change_feed import ChangeNotification

log = structlog.get_logger()

# 这些条目之后任务不会再有新条目
FINAL_OPERATIONS = frozenset({Operation.TASK_COMPLETED, Operation.TASK_FAILED})

UI_BATCH_EVENT = "ui_batch"


class StreamMessage(BaseModel):
    """推送给 SSE 订阅者的消息"""

    event: str = Field(description="SSE event 名称：条目 operation 或 ui_batch")
    data: dict[str, Any] = Field(default_factory=dict)
    sequence_number: int | None = Field(default=None, description="条目序号，UI 批次为 None")
    final: bool = False


def entry_message(notification: ChangeNotification) -> StreamMessage:
    return StreamMessage(
        event=notification.event_type,
        data=notification.payload,
        sequence_number=notification.sequence_number,
        final=notification.event_type in FINAL_OPERATIONS,
    )


class SSEHub:
    """SSE 事件广播器 -- 基于 asyncio.Queue 的发布/订阅模式"""

    def __init__(self, queue_maxsize: int = 100) -> None:
        # task_id -> set of asyncio.Queue
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self._queue_maxsize = queue_maxsize

    def subscriber_count(self, task_id: str) -> int:
        return len(self._subscribers.get(task_id, ()))

    async def subscribe(self, task_id: str) -> asyncio.Queue:
        """订阅指定任务的消息流

        Returns:
            asyncio.Queue 实例，StreamMessage 会被推送到此队列
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_maxsize)
        self._subscribers[task_id].add(queue)
        return queue

    async def unsubscribe(self, task_id: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(task_id)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[task_id]

    async def broadcast(self, task_id: str, message: StreamMessage) -> None:
        """向指定任务的所有订阅者广播消息"""
        dead_queues = []
        for queue in self._subscribers.get(task_id, set()):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                dead_queues.append(queue)

        for q in dead_queues:
            self._subscribers[task_id].discard(q)
        if dead_queues:
            log.warning("sse_subscriber_dropped", task_id=task_id, dropped=len(dead_queues))
        if task_id in self._subscribers and not self._subscribers[task_id]:
            del self._subscribers[task_id]

    async def push(self, context_id: str, requests: list[UIRequest]) -> None:
        """Presentation Channel：把一个 UI 请求批次推送给该任务的订阅者"""
        await self.broadcast(
            context_id,
            StreamMessage(
                event=UI_BATCH_EVENT,
                data={
                    "context_id": context_id,
                    "requests": [r.model_dump(mode="json") for r in requests],
                },
            ),
        )


async def forward_changes(feed_queue: asyncio.Queue, hub: SSEHub) -> None:
    """ChangeFeed -> SSEHub 桥接循环，直到被取消"""
    while True:
        notification: ChangeNotification = await feed_queue.get()
        await hub.broadcast(notification.task_id, entry_message(notification))
