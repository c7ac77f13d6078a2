"""TaskTriggerListener -- 订阅 task_created 变更通知并启动编排

每条通知启动一个后台 asyncio.Task 运行 orchestrate_task，任务集合由监听器持有，
避免被垃圾回收；失败只记录日志，不影响其他任务。
"""

import asyncio

import structlog

from taskloom.core.exceptions import PersistenceAppendFailed
from taskloom.core.models import Operation
from taskloom.core.store.change_feed import ChangeFeed, ChangeNotification

from .orchestrator import TaskOrchestrator

log = structlog.get_logger()


class TaskTriggerListener:
    """task_created -> orchestrate_task"""

    def __init__(self, feed: ChangeFeed, orchestrator: TaskOrchestrator) -> None:
        self._feed = feed
        self._orchestrator = orchestrator
        self._queue: asyncio.Queue | None = None
        self._listener: asyncio.Task | None = None
        self._runs: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._listener is not None and not self._listener.done()

    def start(self) -> None:
        if self.running:
            return
        self._queue = self._feed.subscribe(event_types=[Operation.TASK_CREATED])
        self._listener = asyncio.create_task(self._listen(self._queue), name="task-trigger-listener")
        log.info("task_trigger_listener_started")

    async def stop(self) -> None:
        """停止监听；运行中的编排被取消，由下次启动的孤儿恢复接管"""
        if self._listener is not None:
            self._listener.cancel()
            await asyncio.gather(self._listener, return_exceptions=True)
            self._listener = None
        if self._queue is not None:
            self._feed.unsubscribe(self._queue)
            self._queue = None

        runs = list(self._runs)
        for run in runs:
            run.cancel()
        if runs:
            await asyncio.gather(*runs, return_exceptions=True)
        log.info("task_trigger_listener_stopped", cancelled_runs=len(runs))

    async def wait_idle(self) -> None:
        """等待当前所有编排运行结束"""
        while self._runs:
            await asyncio.gather(*list(self._runs), return_exceptions=True)

    async def _listen(self, queue: asyncio.Queue) -> None:
        while True:
            notification: ChangeNotification = await queue.get()
            if notification.event_type != Operation.TASK_CREATED:
                continue
            self.spawn(notification.task_id)

    def spawn(self, context_id: str) -> asyncio.Task:
        run = asyncio.create_task(self._orchestrate(context_id), name=f"orchestrate-{context_id}")
        self._runs.add(run)
        run.add_done_callback(self._runs.discard)
        return run

    async def _orchestrate(self, context_id: str) -> None:
        try:
            await self._orchestrator.orchestrate_task(context_id)
        except PersistenceAppendFailed as e:
            log.error(
                "triggered_orchestration_aborted",
                context_id=context_id,
                error=str(e),
            )
        except Exception as e:
            log.error(
                "triggered_orchestration_failed",
                context_id=context_id,
                error_type=type(e).__name__,
                error=str(e),
                exc_info=True,
            )
