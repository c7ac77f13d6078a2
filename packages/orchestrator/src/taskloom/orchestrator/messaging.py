"""AgentMessageBus -- Worker 间单向消息通道

编排器是唯一的通道所有者：每个任务一个有界队列，Worker 只拿到只写的 WorkerOutbox，
无法回调编排器内部。编排器在每个阶段结束后 drain 队列，
为每条消息追加 agent_message_routed 条目；任务终态时关闭队列。
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field
from ulid import ULID

from .exceptions import MessageRouteRejected

log = structlog.get_logger()


class AgentMessage(BaseModel):
    """Worker 间消息"""

    message_id: str = Field(default_factory=lambda: str(ULID()))
    context_id: str
    from_worker_id: str
    to_worker_id: str
    message_type: str = Field(default="message")
    content: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class WorkerOutbox:
    """Worker 的发送句柄，绑定 (context_id, worker_id)"""

    def __init__(self, bus: "AgentMessageBus", context_id: str, worker_id: str) -> None:
        self._bus = bus
        self.context_id = context_id
        self.worker_id = worker_id

    def send(
        self,
        to_worker_id: str,
        content: dict[str, Any],
        message_type: str = "message",
    ) -> AgentMessage:
        return self._bus.post(
            self.context_id,
            self.worker_id,
            to_worker_id,
            content,
            message_type=message_type,
        )


class AgentMessageBus:
    """按任务划分的有界消息队列"""

    def __init__(self, can_communicate: Callable[[str, str], bool], queue_size: int = 100) -> None:
        self._can_communicate = can_communicate
        self._queue_size = queue_size
        self._queues: dict[str, asyncio.Queue[AgentMessage]] = {}

    def outbox(self, context_id: str, worker_id: str) -> WorkerOutbox:
        return WorkerOutbox(self, context_id, worker_id)

    def post(
        self,
        context_id: str,
        from_worker_id: str,
        to_worker_id: str,
        content: dict[str, Any],
        message_type: str = "message",
    ) -> AgentMessage:
        """投递消息

        Raises:
            MessageRouteRejected: 路由表不允许 from -> to
            asyncio.QueueFull: 队列已满
        """
        if not self._can_communicate(from_worker_id, to_worker_id):
            log.warning(
                "agent_message_rejected",
                context_id=context_id,
                from_worker_id=from_worker_id,
                to_worker_id=to_worker_id,
            )
            raise MessageRouteRejected(from_worker_id, to_worker_id)

        message = AgentMessage(
            context_id=context_id,
            from_worker_id=from_worker_id,
            to_worker_id=to_worker_id,
            message_type=message_type,
            content=content,
        )
        queue = self._queues.get(context_id)
        if queue is None:
            queue = asyncio.Queue(maxsize=self._queue_size)
            self._queues[context_id] = queue
        try:
            queue.put_nowait(message)
        except asyncio.QueueFull:
            log.warning(
                "agent_message_queue_full",
                context_id=context_id,
                from_worker_id=from_worker_id,
                queue_size=self._queue_size,
            )
            raise
        return message

    def drain(self, context_id: str) -> list[AgentMessage]:
        """取出任务队列中的全部消息（按投递顺序）"""
        queue = self._queues.get(context_id)
        messages: list[AgentMessage] = []
        while queue is not None and not queue.empty():
            messages.append(queue.get_nowait())
        return messages

    def pending_count(self, context_id: str) -> int:
        queue = self._queues.get(context_id)
        return queue.qsize() if queue is not None else 0

    def close(self, context_id: str) -> None:
        queue = self._queues.pop(context_id, None)
        if queue is not None and not queue.empty():
            log.warning(
                "agent_messages_discarded",
                context_id=context_id,
                count=queue.qsize(),
            )
