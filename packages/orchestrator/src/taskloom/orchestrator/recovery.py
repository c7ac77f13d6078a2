"""TaskRecoveryService -- 启动时恢复孤儿任务

孤儿任务：重启后发现状态为 in_progress 且没有终态条目的任务。
恢复不是特殊路径：追加一条 task_recovered 后重新进入同一个 orchestrate_task，
由历史推导出的状态决定从哪里继续（已记录的计划、已完成的阶段与子任务不会重做）。
"""

from datetime import UTC, datetime

import structlog

from taskloom.core.models import Operation, TaskStatus
from taskloom.core.models.payloads import TaskFailedPayload, TaskRecoveredPayload
from taskloom.core.store.protocols import PersistenceStore

from .orchestrator import TaskOrchestrator

log = structlog.get_logger()

RECOVERY_REASON = "Server restart detected"


class TaskRecoveryService:
    """孤儿任务恢复"""

    def __init__(self, store: PersistenceStore, orchestrator: TaskOrchestrator) -> None:
        self._store = store
        self._orchestrator = orchestrator

    async def recover_orphaned_tasks(self) -> list[str]:
        """恢复所有孤儿任务，返回已重新进入编排的 context_id"""
        candidates = await self._store.list_context_ids_by_status(TaskStatus.IN_PROGRESS)
        recovered: list[str] = []

        for context_id in candidates:
            if self._orchestrator.is_running(context_id):
                continue
            context = await self._store.get_context(context_id)
            if context is None or context.current_state.status != TaskStatus.IN_PROGRESS:
                # 缓存只是读优化，以历史重算结果为准
                log.info("orphan_candidate_skipped", context_id=context_id)
                continue

            previous_phase = context.current_state.phase
            try:
                await self._orchestrator.entry_log.append(
                    context,
                    Operation.TASK_RECOVERED,
                    TaskRecoveredPayload(
                        reason=RECOVERY_REASON,
                        recovered_at=datetime.now(UTC),
                        last_sequence=context.last_sequence,
                        previous_phase=previous_phase,
                    ),
                    reasoning="Task was in progress without a terminal entry when the process "
                    "restarted; resuming from the last computed state",
                )
                log.info(
                    "orphaned_task_recovering",
                    context_id=context_id,
                    last_sequence=context.last_sequence,
                    phase=previous_phase,
                )
                await self._orchestrator.orchestrate_task(context)
                recovered.append(context_id)
            except Exception as e:
                log.error(
                    "orphaned_task_recovery_failed",
                    context_id=context_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                await self._mark_failed(context_id, e)

        if candidates:
            log.info("orphan_recovery_finished", candidates=len(candidates), recovered=len(recovered))
        return recovered

    async def start_pending_tasks(self) -> list[str]:
        """启动创建后尚未开始编排的任务（进程在触发前退出）"""
        pending = await self._store.list_context_ids_by_status(TaskStatus.PENDING)
        started: list[str] = []
        for context_id in pending:
            if self._orchestrator.is_running(context_id):
                continue
            try:
                await self._orchestrator.orchestrate_task(context_id)
                started.append(context_id)
            except Exception as e:
                log.error(
                    "pending_task_start_failed",
                    context_id=context_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
        return started

    async def _mark_failed(self, context_id: str, error: Exception) -> None:
        try:
            context = await self._orchestrator.load_context(context_id)
            if context.is_terminal:
                return
            await self._orchestrator.entry_log.append(
                context,
                Operation.TASK_FAILED,
                TaskFailedPayload(
                    error=f"Recovery after restart failed: {error}",
                    error_type=type(error).__name__,
                    phase=context.current_state.phase,
                ),
                reasoning="Orphaned task could not be resumed",
            )
        except Exception as e:
            log.error(
                "orphaned_task_failure_not_recorded",
                context_id=context_id,
                error_type=type(e).__name__,
                error=str(e),
            )
