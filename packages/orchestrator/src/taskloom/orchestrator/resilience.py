"""Resilience Controller -- 子任务级降级与任务级失败策略

子任务级（每次 Worker 调度一个状态机）::

    attempting -> success
               -> unavailable  (availability != available 或无法解析实现)
               -> failed       (dispatch 抛出异常 / 超时 / 返回值无法识别)

unavailable / failed 时按 Worker 声明的策略（缺省用任务级默认值）恢复：
- user_input: 生成说明缘由的输入请求，子任务结果为 needs_input
- alternative_worker: 换一个技能有交集的可用 Worker 重试一次（单跳），
  找不到或替补也失败时转为 defer
- defer: 子任务结果为 delegated 且 can_proceed=True

任务级（异常逃逸出阶段执行）：degrade / guide / fail，
degrade 与 guide 生成的请求绕过批处理立即下发，任务进入 waiting_for_input。
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from taskloom.core.event_log import EntryLog
from taskloom.core.models import (
    AgentCapability,
    Operation,
    Subtask,
    SubtaskResult,
    SubtaskStatus,
    TaskContext,
    TaskFallbackStrategy,
    TaskStatus,
    UIRequest,
    UITemplateType,
    WorkerFallbackStrategy,
)
from taskloom.core.models.payloads import (
    OrchestrationFailedPayload,
    StatusUpdatedPayload,
    SubtaskDeferredPayload,
    SubtaskFailedPayload,
    TaskFailedPayload,
    WorkerSubstitutedPayload,
)

from .config import ResilienceConfig
from .disclosure import ProgressiveDisclosureBatcher
from .protocols import Planner
from .workers import WorkerRegistry

log = structlog.get_logger()

TASK_FALLBACK_REASON = "task_fallback"


class AttemptState(StrEnum):
    """单次 Worker 调度的状态"""

    ATTEMPTING = "attempting"
    SUCCESS = "success"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


@dataclass
class DispatchFailure:
    """一次失败调度的结论"""

    worker_id: str
    state: AttemptState
    error: Exception


# 对指定 Worker 发起一次调度：成功返回 (result, None)，失败返回 (None, failure)
AttemptFn = Callable[[str], Awaitable[tuple[SubtaskResult | None, DispatchFailure | None]]]


def _goal_steps(metadata: dict[str, Any]) -> list[dict[str, str]]:
    goals = metadata.get("goals")
    if isinstance(goals, dict):
        goals = goals.get("primary") or []

    steps: list[dict[str, str]] = []
    for goal in goals or []:
        if isinstance(goal, str):
            steps.append({"title": goal, "description": ""})
        elif isinstance(goal, dict):
            title = goal.get("description") or goal.get("id") or ""
            if title:
                steps.append({"title": str(title), "description": str(goal.get("details", ""))})

    if not steps:
        steps.append(
            {
                "title": metadata.get("title") or "Complete the task",
                "description": metadata.get("description", ""),
            }
        )
    return steps


class ResilienceController:
    """容错控制器"""

    def __init__(
        self,
        entry_log: EntryLog,
        registry: WorkerRegistry,
        batcher: ProgressiveDisclosureBatcher,
        planner: Planner,
        config: ResilienceConfig,
    ) -> None:
        self._entry_log = entry_log
        self._registry = registry
        self._batcher = batcher
        self._planner = planner
        self._config = config

    # ============================================================
    # 子任务级
    # ============================================================

    def strategy_for(self, capability: AgentCapability | None) -> WorkerFallbackStrategy:
        if capability is not None and capability.fallback_strategy is not None:
            return capability.fallback_strategy
        return self._config.default_worker_strategy

    async def recover(
        self,
        context: TaskContext,
        phase_name: str,
        subtask: Subtask,
        failure: DispatchFailure,
        attempt: AttemptFn,
    ) -> SubtaskResult:
        """对失败的调度应用降级策略，总是返回一个子任务结果"""
        capability = await self._registry.get_capability(failure.worker_id)
        strategy = self.strategy_for(capability)
        await self._record_failure(context, phase_name, subtask, failure, strategy)

        if strategy == WorkerFallbackStrategy.USER_INPUT:
            return self.user_input_result(subtask, failure)

        if strategy == WorkerFallbackStrategy.ALTERNATIVE_WORKER:
            alternative = (
                self._registry.find_alternative(capability) if capability is not None else None
            )
            if alternative is None:
                log.info(
                    "no_alternative_worker",
                    context_id=context.context_id,
                    subtask_id=subtask.subtask_id,
                    worker_id=failure.worker_id,
                )
                return await self.defer(
                    context,
                    phase_name,
                    subtask,
                    failure.worker_id,
                    reason=f"No alternative worker shares skills with {failure.worker_id}",
                )

            shared = sorted(alternative.skills & capability.skills)
            await self._entry_log.append(
                context,
                Operation.WORKER_SUBSTITUTED,
                WorkerSubstitutedPayload(
                    subtask_id=subtask.subtask_id,
                    phase_name=phase_name,
                    original_worker_id=failure.worker_id,
                    substitute_worker_id=alternative.worker_id,
                    shared_skills=shared,
                ),
                reasoning=f"{failure.worker_id} {failure.state}; retrying subtask on "
                f"{alternative.worker_id} (shared skills: {', '.join(shared)})",
            )
            result, second = await attempt(alternative.worker_id)
            if result is not None:
                return result.model_copy(update={"substituted_for": failure.worker_id})

            await self._record_failure(
                context, phase_name, subtask, second, WorkerFallbackStrategy.DEFER
            )
            return await self.defer(
                context,
                phase_name,
                subtask,
                alternative.worker_id,
                reason=f"Substitute worker {alternative.worker_id} also {second.state}",
            )

        return await self.defer(
            context,
            phase_name,
            subtask,
            failure.worker_id,
            reason=f"{failure.worker_id} {failure.state}: {failure.error}",
        )

    def user_input_result(self, subtask: Subtask, failure: DispatchFailure) -> SubtaskResult:
        """把失败的子任务转为一条面向用户的输入请求"""
        reason = (
            f"{failure.worker_id} is not available right now"
            if failure.state == AttemptState.UNAVAILABLE
            else f"{failure.worker_id} could not complete this step automatically"
        )
        request = self.input_request(
            subtask, failure.worker_id, reason=reason, context_reason=f"worker_{failure.state}"
        )
        return SubtaskResult(
            subtask_id=subtask.subtask_id,
            description=subtask.description,
            worker_id=failure.worker_id,
            status=SubtaskStatus.NEEDS_INPUT,
            ui_requests=[request],
            reasoning=f"{reason}; asking the user instead",
        )

    @staticmethod
    def input_request(
        subtask: Subtask,
        worker_id: str,
        *,
        reason: str,
        context_reason: str,
    ) -> UIRequest:
        """为子任务生成一条文本输入请求，expected_output 为 dict 时其键即字段"""
        fields = (
            [{"name": str(key), "label": str(key).replace("_", " ").capitalize()} for key in subtask.expected_output]
            if isinstance(subtask.expected_output, dict)
            else []
        )
        return UIRequest(
            template_type=UITemplateType.SMART_TEXT_INPUT,
            semantic_data={
                "title": subtask.description,
                "instructions": subtask.instruction,
                "reason": reason,
                "expected_output": subtask.expected_output,
                "fields": fields,
            },
            context={
                "subtask_id": subtask.subtask_id,
                "worker_id": worker_id,
                "reason": context_reason,
            },
        )

    async def defer(
        self,
        context: TaskContext,
        phase_name: str,
        subtask: Subtask,
        worker_id: str,
        reason: str,
    ) -> SubtaskResult:
        await self._entry_log.append(
            context,
            Operation.SUBTASK_DEFERRED,
            SubtaskDeferredPayload(
                subtask_id=subtask.subtask_id,
                phase_name=phase_name,
                worker_id=worker_id,
                reason=reason,
                can_proceed=True,
            ),
            reasoning=f"Subtask {subtask.subtask_id} deferred so the phase can proceed: {reason}",
        )
        return SubtaskResult(
            subtask_id=subtask.subtask_id,
            description=subtask.description,
            worker_id=worker_id,
            status=SubtaskStatus.DELEGATED,
            reasoning=reason,
            can_proceed=True,
        )

    async def _record_failure(
        self,
        context: TaskContext,
        phase_name: str,
        subtask: Subtask,
        failure: DispatchFailure,
        strategy: WorkerFallbackStrategy,
    ) -> None:
        log.warning(
            "subtask_dispatch_failed",
            context_id=context.context_id,
            subtask_id=subtask.subtask_id,
            worker_id=failure.worker_id,
            attempt_state=str(failure.state),
            error_type=type(failure.error).__name__,
            strategy=str(strategy),
        )
        await self._entry_log.append(
            context,
            Operation.SUBTASK_FAILED,
            SubtaskFailedPayload(
                subtask_id=subtask.subtask_id,
                phase_name=phase_name,
                worker_id=failure.worker_id,
                attempt_state=str(failure.state),
                error_type=type(failure.error).__name__,
                error_message=str(failure.error),
                strategy=str(strategy),
            ),
            reasoning=f"Dispatch of subtask {subtask.subtask_id} to {failure.worker_id} "
            f"ended {failure.state}; applying {strategy}",
        )

    # ============================================================
    # 任务级
    # ============================================================

    async def handle_task_failure(self, context: TaskContext, error: Exception) -> None:
        """应用任务级失败策略（唯一入口）"""
        strategy = self._config.task_fallback_strategy
        await self._entry_log.append(
            context,
            Operation.ORCHESTRATION_FAILED,
            OrchestrationFailedPayload(
                error_type=type(error).__name__,
                error_message=str(error),
                strategy=str(strategy),
            ),
            reasoning=f"Orchestration raised {type(error).__name__}; applying task-level "
            f"{strategy} policy",
        )
        log.error(
            "orchestration_failed",
            context_id=context.context_id,
            error_type=type(error).__name__,
            error=str(error),
            strategy=str(strategy),
        )

        if strategy == TaskFallbackStrategy.FAIL:
            await self._entry_log.append(
                context,
                Operation.TASK_FAILED,
                TaskFailedPayload(
                    error=f"Task could not be completed: {error}",
                    error_type=type(error).__name__,
                    phase=context.current_state.phase,
                ),
                reasoning="Task-level fallback strategy is 'fail'",
            )
            return

        request: UIRequest | None = None
        if strategy == TaskFallbackStrategy.GUIDE:
            request = await self._guidance_request(context, error)
        if request is None:
            request = self.degrade_request(context, error)

        # 先前阶段仍在排队的请求先行下发，否则人工完成后会被丢弃
        await self._batcher.flush(context)
        await self._batcher.deliver_immediately(context, [request])
        if context.current_state.status != TaskStatus.WAITING_FOR_INPUT:
            await self._entry_log.append(
                context,
                Operation.STATUS_UPDATED,
                StatusUpdatedPayload(
                    from_status=context.current_state.status,
                    to_status=TaskStatus.WAITING_FOR_INPUT,
                    reason="manual completion requested after orchestration failure",
                ),
                reasoning=f"Task-level {request.context.get('strategy')} fallback sent a manual "
                "completion request to the user",
            )

    def degrade_request(self, context: TaskContext, error: Exception) -> UIRequest:
        """由任务目标生成分步人工完成向导"""
        title = context.metadata.get("title") or context.template_id
        return UIRequest(
            template_type=UITemplateType.STEPPED_WIZARD,
            semantic_data={
                "title": f"Complete '{title}' manually",
                "reason": f"Automated processing could not continue: {error}",
                "steps": _goal_steps(context.metadata),
            },
            context={"reason": TASK_FALLBACK_REASON, "strategy": str(TaskFallbackStrategy.DEGRADE)},
        )

    async def _guidance_request(self, context: TaskContext, error: Exception) -> UIRequest | None:
        prompt_context = {
            "task": {
                "title": context.metadata.get("title", ""),
                "description": context.metadata.get("description", ""),
                "goals": context.metadata.get("goals"),
            },
            "error": str(error),
        }
        try:
            steps = await self._planner.generate_guidance(prompt_context)
        except Exception as e:
            log.warning(
                "guidance_generation_failed",
                context_id=context.context_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

        return UIRequest(
            template_type=UITemplateType.INSTRUCTION_PANEL,
            semantic_data={
                "title": context.metadata.get("title") or "Manual completion",
                "reason": f"Automated processing could not continue: {error}",
                "instructions": steps,
            },
            context={"reason": TASK_FALLBACK_REASON, "strategy": str(TaskFallbackStrategy.GUIDE)},
        )
