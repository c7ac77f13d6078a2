"""ChangeFeed -- 进程内变更通知流

每次提交 task context 创建或条目插入后发布 {task_id, event_type, payload}。
订阅者持有一个有界 asyncio.Queue，可按 task_id 与 event_type 过滤；队列已满的订阅者被移除。
编排器订阅 task_created 通知作为启动 orchestrate_task 的外部触发。
"""

import asyncio
from collections import defaultdict
from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, Field

# 订阅全部任务时使用的键
ALL_TASKS = "*"


class ChangeNotification(BaseModel):
    """行插入通知"""

    task_id: str = Field(description="Task Context ID")
    event_type: str = Field(description="task_created 或条目的 operation")
    payload: dict[str, Any] = Field(default_factory=dict, description="条目内容")
    sequence_number: int | None = Field(default=None, description="条目序号")


class ChangeFeed:
    """变更通知广播器 -- 基于 asyncio.Queue 的发布/订阅模式"""

    def __init__(self, queue_maxsize: int = 256) -> None:
        # task_id（或 ALL_TASKS）-> set of asyncio.Queue
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)
        # queue -> 关注的 event_type 集合，未登记表示全部
        self._event_filters: dict[asyncio.Queue, frozenset[str]] = {}
        self._queue_maxsize = queue_maxsize

    def subscribe(
        self,
        task_id: str | None = None,
        event_types: Iterable[str] | None = None,
    ) -> asyncio.Queue:
        """订阅变更通知

        Args:
            task_id: 只接收该任务的通知；None 表示接收全部任务
            event_types: 只接收这些类型的通知；None 表示全部类型

        Returns:
            asyncio.Queue 实例，新通知会被推送到此队列
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_maxsize)
        self._subscribers[task_id or ALL_TASKS].add(queue)
        if event_types is not None:
            self._event_filters[queue] = frozenset(str(t) for t in event_types)
        return queue

    def unsubscribe(self, queue: asyncio.Queue, task_id: str | None = None) -> None:
        """取消订阅"""
        self._event_filters.pop(queue, None)
        key = task_id or ALL_TASKS
        subscribers = self._subscribers.get(key)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[key]

    def publish(self, notification: ChangeNotification) -> None:
        """向匹配的订阅者推送通知"""
        for key in (notification.task_id, ALL_TASKS):
            dead_queues = []
            for queue in self._subscribers.get(key, set()):
                wanted = self._event_filters.get(queue)
                if wanted is not None and notification.event_type not in wanted:
                    continue
                try:
                    queue.put_nowait(notification)
                except asyncio.QueueFull:
                    dead_queues.append(queue)

            # 清理已满的队列
            for q in dead_queues:
                self._subscribers[key].discard(q)
                self._event_filters.pop(q, None)
            if key in self._subscribers and not self._subscribers[key]:
                del self._subscribers[key]

    def subscriber_count(self, task_id: str | None = None) -> int:
        return len(self._subscribers.get(task_id or ALL_TASKS, set()))
