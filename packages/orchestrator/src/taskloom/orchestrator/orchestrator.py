"""TaskOrchestrator -- 编排器门面

显式构造、依赖注入的编排器实例，持有自己的能力缓存与运行中任务表，
由宿主进程按引用传递（每个进程一个权威实例，但没有模块级全局状态）。

orchestrate_task 是唯一的编排入口：新任务、用户答复后的续跑、
重启后的孤儿恢复都走同一条路径，状态完全由历史推导。
同一 context_id 同时至多一个运行；第二个并发调用直接返回当前状态，不追加任何条目。
任务级失败策略只在这里应用。
"""

from datetime import UTC, datetime
from typing import Any

import structlog
from ulid import ULID

from taskloom.core.event_log import EntryLog
from taskloom.core.exceptions import ContextNotFoundError, PersistenceAppendFailed
from taskloom.core.models import (
    Actor,
    ActorType,
    ComputedState,
    ExecutionPlan,
    Operation,
    PhaseStatus,
    SubtaskStatus,
    TaskContext,
    TaskStatus,
    Trigger,
)
from taskloom.core.models.payloads import (
    AgentMessageRoutedPayload,
    GoalsAchievedPayload,
    OrchestrationStartedPayload,
    StatusUpdatedPayload,
    TaskCompletedPayload,
    TaskCreatedPayload,
    TaskFailedPayload,
    TaskResumedPayload,
    UIResponseReceivedPayload,
)
from taskloom.core.state_computer import compute_state, compute_state_at_sequence
from taskloom.core.store.protocols import PersistenceStore

from .config import OrchestratorConfig
from .disclosure import ProgressiveDisclosureBatcher
from .exceptions import UIResponseRejected
from .goals import are_goals_achieved, goal_names
from .messaging import AgentMessageBus
from .plan_generator import PlanGenerator
from .protocols import CapabilityDirectory, Planner, PresentationChannel
from .resilience import TASK_FALLBACK_REASON, ResilienceController
from .scheduler import PhaseScheduler
from .workers import WorkerRegistry

log = structlog.get_logger()


class TaskOrchestrator:
    """任务编排器"""

    def __init__(
        self,
        store: PersistenceStore,
        directory: CapabilityDirectory,
        planner: Planner,
        presentation: PresentationChannel,
        config: OrchestratorConfig | None = None,
    ) -> None:
        self._store = store
        self._config = config or OrchestratorConfig()

        self.entry_log = EntryLog(store)
        self.registry = WorkerRegistry(directory)
        self.bus = AgentMessageBus(self.registry.can_communicate, self._config.message_queue_size)
        self.batcher = ProgressiveDisclosureBatcher(
            self.entry_log, planner, presentation, self._config.disclosure
        )
        self.resilience = ResilienceController(
            self.entry_log, self.registry, self.batcher, planner, self._config.resilience
        )
        self.generator = PlanGenerator(self.entry_log, planner, self._config.planning)
        self.scheduler = PhaseScheduler(
            self.entry_log, self.registry, self.resilience, self.bus, self._config.resilience
        )

        # context_id -> 正在运行的 TaskContext
        self.active_executions: dict[str, TaskContext] = {}

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def store(self) -> PersistenceStore:
        return self._store

    # ============================================================
    # 任务创建与查询
    # ============================================================

    async def create_task(
        self,
        template_id: str,
        tenant_id: str,
        metadata: dict[str, Any] | None = None,
        *,
        actor: Actor | None = None,
        trigger: Trigger | None = None,
    ) -> TaskContext:
        """创建 Task Context 并写入 task_created 条目"""
        metadata = dict(metadata or {})
        context = TaskContext(
            context_id=str(ULID()),
            template_id=template_id,
            tenant_id=tenant_id,
            metadata=metadata,
            created_at=datetime.now(UTC),
        )
        await self.entry_log.start_context(
            context,
            TaskCreatedPayload(
                template_id=template_id,
                tenant_id=tenant_id,
                title=str(metadata.get("title", "")),
                initial_data=metadata.get("initial_data") or {},
                required_fields=metadata.get("required_fields") or [],
            ),
            reasoning=f"Task created from template '{template_id}'",
            actor=actor,
            trigger=trigger,
        )
        log.info(
            "task_created",
            context_id=context.context_id,
            template_id=template_id,
            tenant_id=tenant_id,
        )
        return context

    async def load_context(self, context_id: str) -> TaskContext:
        """从存储加载任务（current_state 由历史重算）

        Raises:
            ContextNotFoundError: 任务不存在
        """
        context = await self._store.get_context(context_id)
        if context is None:
            raise ContextNotFoundError(context_id)
        return context

    async def get_state_at_sequence(self, context_id: str, sequence_number: int) -> ComputedState:
        """时间旅行查询：序号 sequence_number（含）时刻的状态"""
        history = await self._store.read_history(context_id)
        if not history:
            raise ContextNotFoundError(context_id)
        return compute_state_at_sequence(history, sequence_number)

    def is_running(self, context_id: str) -> bool:
        return context_id in self.active_executions

    # ============================================================
    # 编排主循环
    # ============================================================

    async def orchestrate_task(self, context: TaskContext | str) -> ComputedState:
        """编排一个任务直到完成、失败或需要用户输入

        Raises:
            PersistenceAppendFailed: 条目写入失败，本次运行中止，等待孤儿恢复接管
        """
        if isinstance(context, str):
            context = await self.load_context(context)
        context_id = context.context_id

        running = self.active_executions.get(context_id)
        if running is not None:
            log.info("orchestration_already_running", context_id=context_id)
            return running.current_state
        self.active_executions[context_id] = context

        try:
            with structlog.contextvars.bound_contextvars(context_id=context_id):
                await self._sync_history(context)
                await self._run(context)
        except PersistenceAppendFailed:
            log.error("orchestration_aborted", context_id=context_id, reason="persistence_append_failed")
            self._release(context_id)
            raise
        finally:
            self.active_executions.pop(context_id, None)

        if context.is_terminal:
            self._release(context_id)
            await self.entry_log.release(context_id)
        return context.current_state

    async def _sync_history(self, context: TaskContext) -> None:
        history = await self._store.read_history(context.context_id)
        if len(history) != len(context.history):
            context.history = history
            context.current_state = compute_state(history)

    async def _run(self, context: TaskContext) -> None:
        state = context.current_state
        if context.is_terminal:
            log.info("orchestration_skipped_terminal", status=str(state.status))
            return

        if state.status == TaskStatus.WAITING_FOR_INPUT:
            pending = state.data.get("pending_ui_requests") or []
            if pending:
                log.info("orchestration_waiting_for_input", pending=len(pending))
                return
            await self.entry_log.append(
                context,
                Operation.TASK_RESUMED,
                TaskResumedPayload(from_status=state.status, resume_phase=state.phase),
                reasoning="All requested user input received; resuming orchestration",
            )

        try:
            snapshot = await self.registry.refresh()
        except Exception as e:
            log.warning("capability_refresh_failed", error_type=type(e).__name__, error=str(e))
            snapshot = self.registry.snapshot()

        if state.status == TaskStatus.PENDING:
            await self.entry_log.append(
                context,
                Operation.ORCHESTRATION_STARTED,
                OrchestrationStartedPayload(
                    orchestrator_version=self._config.version,
                    available_workers=sorted(w for w, cap in snapshot.items() if cap.is_available),
                ),
                reasoning=f"Orchestration started with {len(snapshot)} worker(s) in the "
                "capability directory",
            )

        try:
            if self._manual_completion_answered(context):
                await self._complete(
                    context,
                    goals_achieved=False,
                    reasoning="User completed the task manually following fallback guidance",
                )
                return

            plan = self._recorded_plan(context)
            if plan is None:
                plan = await self.generator.create_plan(context, snapshot)
            else:
                log.info("execution_plan_reused", plan_id=plan.metadata.plan_id)
            await self._execute_plan(context, plan)
        except PersistenceAppendFailed:
            raise
        except Exception as e:
            await self.resilience.handle_task_failure(context, e)

    async def _execute_plan(self, context: TaskContext, plan: ExecutionPlan) -> None:
        completed = set(context.current_state.data.get("completed_phases") or [])

        for index, phase in enumerate(plan.phases):
            if phase.name in completed:
                continue

            result = await self.scheduler.execute_phase(context, phase, index)
            await self._route_agent_messages(context)
            await self.batcher.handle_user_input_requests(context, result.ui_requests)

            if result.status == PhaseStatus.NEEDS_INPUT:
                await self.batcher.flush(context)
                await self.entry_log.append(
                    context,
                    Operation.STATUS_UPDATED,
                    StatusUpdatedPayload(
                        from_status=context.current_state.status,
                        to_status=TaskStatus.WAITING_FOR_INPUT,
                        reason=f"phase '{phase.name}' needs user input",
                    ),
                    reasoning=f"Phase '{phase.name}' is waiting on user input; pausing orchestration",
                )
                return

            if result.status == PhaseStatus.FAILED:
                await self.batcher.flush(context)
                failed = [r.subtask_id for r in result.results if r.status == SubtaskStatus.FAILED]
                await self.entry_log.append(
                    context,
                    Operation.TASK_FAILED,
                    TaskFailedPayload(
                        error=f"Phase '{phase.name}' could not be completed "
                        f"({len(failed)} subtask(s) failed)",
                        error_type="PhaseFailed",
                        phase=phase.name,
                    ),
                    reasoning=f"Phase '{phase.name}' failed: subtasks {failed}",
                )
                return

            completed.add(phase.name)
            if are_goals_achieved(context):
                skipped = [p.name for p in plan.phases[index + 1 :]]
                await self.batcher.flush(context)
                await self.entry_log.append(
                    context,
                    Operation.GOALS_ACHIEVED,
                    GoalsAchievedPayload(goals=goal_names(context), skipped_phases=skipped),
                    reasoning=f"Primary goals satisfied after phase '{phase.name}'; "
                    f"skipping {len(skipped)} remaining phase(s)",
                )
                await self._complete(
                    context,
                    goals_achieved=True,
                    reasoning="Task completed: primary goals achieved",
                )
                return

        await self.batcher.flush(context)
        await self._complete(
            context,
            goals_achieved=False,
            reasoning=f"Task completed: all {len(plan.phases)} phase(s) executed",
        )

    async def _complete(self, context: TaskContext, *, goals_achieved: bool, reasoning: str) -> None:
        await self.entry_log.append(
            context,
            Operation.TASK_COMPLETED,
            TaskCompletedPayload(
                completed_phases=list(context.current_state.data.get("completed_phases") or []),
                goals_achieved=goals_achieved,
            ),
            reasoning=reasoning,
        )
        log.info("task_completed", context_id=context.context_id, goals_achieved=goals_achieved)

    async def _route_agent_messages(self, context: TaskContext) -> None:
        for message in self.bus.drain(context.context_id):
            await self.entry_log.append(
                context,
                Operation.AGENT_MESSAGE_ROUTED,
                AgentMessageRoutedPayload(
                    message_id=message.message_id,
                    from_worker_id=message.from_worker_id,
                    to_worker_id=message.to_worker_id,
                    message_type=message.message_type,
                    content=message.content,
                ),
                reasoning=f"Routed {message.message_type} from {message.from_worker_id} "
                f"to {message.to_worker_id}",
                actor=Actor(type=ActorType.AGENT, id=message.from_worker_id),
            )

    @staticmethod
    def _recorded_plan(context: TaskContext) -> ExecutionPlan | None:
        raw = context.current_state.data.get("execution_plan")
        if not isinstance(raw, dict):
            return None
        return ExecutionPlan.model_validate(raw)

    @staticmethod
    def _manual_completion_answered(context: TaskContext) -> bool:
        data = context.current_state.data
        responses = data.get("ui_responses") or {}
        pending = set(data.get("pending_ui_requests") or [])
        for request_id, request in (data.get("ui_requests") or {}).items():
            reason = (request.get("context") or {}).get("reason") if isinstance(request, dict) else None
            if reason == TASK_FALLBACK_REASON and request_id in responses and request_id not in pending:
                return True
        return False

    def _release(self, context_id: str) -> None:
        """清理任务的内存状态（批处理队列、消息队列）"""
        self.batcher.clear(context_id)
        self.bus.close(context_id)

    # ============================================================
    # 用户响应
    # ============================================================

    async def submit_ui_response(
        self,
        context_id: str,
        request_id: str,
        response: dict[str, Any],
        *,
        actor: Actor | None = None,
        resume: bool = True,
    ) -> TaskContext:
        """记录用户对 UI 请求的答复；没有待答复请求时续跑编排

        Raises:
            ContextNotFoundError: 任务不存在
            UIResponseRejected: 请求不存在、已答复或任务已终结
        """
        context = self.active_executions.get(context_id) or await self.load_context(context_id)
        data = context.current_state.data

        if context.is_terminal:
            raise UIResponseRejected(context_id, request_id, f"task is {context.current_state.status}")
        if request_id not in (data.get("ui_requests") or {}):
            raise UIResponseRejected(context_id, request_id, "unknown request")
        if request_id not in (data.get("pending_ui_requests") or []):
            raise UIResponseRejected(context_id, request_id, "request already answered")

        await self.entry_log.append(
            context,
            Operation.UI_RESPONSE_RECEIVED,
            UIResponseReceivedPayload(request_id=request_id, response=response),
            reasoning=f"User responded to request {request_id}",
            actor=actor or Actor(type=ActorType.USER, id=context.tenant_id or "user"),
        )

        remaining = context.current_state.data.get("pending_ui_requests") or []
        log.info(
            "ui_response_recorded",
            context_id=context_id,
            request_id=request_id,
            remaining=len(remaining),
        )
        if resume and self.should_resume(context):
            await self.orchestrate_task(context)
        return context

    def should_resume(self, context: TaskContext) -> bool:
        state = context.current_state
        return (
            state.status == TaskStatus.WAITING_FOR_INPUT
            and not state.data.get("pending_ui_requests")
            and context.context_id not in self.active_executions
        )

