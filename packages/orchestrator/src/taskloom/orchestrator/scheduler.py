"""Phase/Subtask Scheduler -- 阶段内子任务调度

- parallel_execution=True: 全部子任务并发调度，gather(return_exceptions=True) 汇合，
  单个子任务失败不取消兄弟任务
- parallel_execution=False: 严格按声明顺序执行，前一子任务的 output_data
  深合并进下一子任务的 input_data

阶段状态按优先级推导：needs_input > failed > completed（delegated 视为完成）。
阶段内只有 PersistenceAppendFailed（及非法状态流转）会向外传播，
两种模式下其余子任务级错误都转换为面向用户的输入请求。

续跑（resume / 孤儿恢复）时已记录完成的子任务不再调度，其输出仍参与顺序传递；
请求过用户输入且全部已答复的子任务以用户答复作为输出直接完成。
"""

import asyncio
import copy
import time
from functools import partial
from typing import Any

import structlog
from pydantic import ValidationError

from taskloom.core.event_log import EntryLog
from taskloom.core.exceptions import InvalidStatusTransition, PersistenceAppendFailed
from taskloom.core.models import (
    ExecutionPhase,
    Operation,
    PhaseResult,
    PhaseStatus,
    Subtask,
    SubtaskResult,
    SubtaskStatus,
    TaskContext,
    UIRequest,
    WorkerInstruction,
    WorkerResponse,
)
from taskloom.core.models.payloads import (
    PhaseCompletedPayload,
    PhaseStartedPayload,
    SubtaskCompletedPayload,
    SubtaskDeferredPayload,
    SubtaskDelegatedPayload,
    SubtaskFailedPayload,
)
from taskloom.core.state_computer import RESERVED_KEYS, deep_merge

from .config import ResilienceConfig
from .exceptions import WorkerDispatchFailed, WorkerUnavailable
from .messaging import AgentMessageBus
from .resilience import AttemptState, DispatchFailure, ResilienceController
from .workers import WorkerRegistry

log = structlog.get_logger()


def derive_phase_status(results: list[SubtaskResult]) -> PhaseStatus:
    """needs_input 优先于 failed：有子任务在等用户时阶段绝不报告完成"""
    statuses = {result.status for result in results}
    if SubtaskStatus.NEEDS_INPUT in statuses:
        return PhaseStatus.NEEDS_INPUT
    if SubtaskStatus.FAILED in statuses:
        return PhaseStatus.FAILED
    return PhaseStatus.COMPLETED


def answered_input(data: dict[str, Any], subtask_id: str) -> dict[str, Any] | None:
    """子任务发出的输入请求全部得到答复时返回合并后的答复，否则返回 None"""
    requests = data.get("ui_requests") or {}
    mine = [
        request_id
        for request_id, request in requests.items()
        if isinstance(request, dict) and (request.get("context") or {}).get("subtask_id") == subtask_id
    ]
    if not mine:
        return None

    pending = set(data.get("pending_ui_requests") or [])
    responses = data.get("ui_responses") or {}
    if any(request_id in pending for request_id in mine):
        return None
    if not any(request_id in responses for request_id in mine):
        return None

    merged: dict[str, Any] = {}
    for request_id in mine:
        merged = deep_merge(merged, responses.get(request_id) or {})
    return merged


class PhaseScheduler:
    """阶段调度器"""

    def __init__(
        self,
        entry_log: EntryLog,
        registry: WorkerRegistry,
        resilience: ResilienceController,
        bus: AgentMessageBus,
        config: ResilienceConfig,
    ) -> None:
        self._entry_log = entry_log
        self._registry = registry
        self._resilience = resilience
        self._bus = bus
        self._config = config

    async def execute_phase(
        self,
        context: TaskContext,
        phase: ExecutionPhase,
        phase_index: int = 0,
    ) -> PhaseResult:
        """执行一个阶段

        Raises:
            PersistenceAppendFailed: 条目写入失败（对本次运行致命）
        """
        start = time.monotonic()
        await self._entry_log.append(
            context,
            Operation.PHASE_STARTED,
            PhaseStartedPayload(
                phase_name=phase.name,
                phase_index=phase_index,
                subtask_count=len(phase.subtasks),
                parallel_execution=phase.parallel_execution,
            ),
            reasoning=f"Starting phase '{phase.name}' with {len(phase.subtasks)} subtask(s)"
            + (" in parallel" if phase.parallel_execution else " in sequence"),
        )

        data = context.current_state.data
        done = set(data.get("completed_subtasks") or [])
        outputs: dict[str, Any] = data.get("subtask_outputs") or {}

        if phase.parallel_execution:
            results = await self._run_parallel(context, phase, done, outputs)
        else:
            results = await self._run_sequential(context, phase, done, outputs)

        status = derive_phase_status(results)
        counts = {s: sum(1 for r in results if r.status == s) for s in SubtaskStatus}
        duration_ms = int((time.monotonic() - start) * 1000)
        await self._entry_log.append(
            context,
            Operation.PHASE_COMPLETED,
            PhaseCompletedPayload(
                phase_name=phase.name,
                phase_index=phase_index,
                status=status,
                completed=counts[SubtaskStatus.COMPLETED],
                failed=counts[SubtaskStatus.FAILED],
                needs_input=counts[SubtaskStatus.NEEDS_INPUT],
                delegated=counts[SubtaskStatus.DELEGATED],
                duration_ms=duration_ms,
            ),
            reasoning=f"Phase '{phase.name}' finished with status {status}",
        )
        log.info(
            "phase_executed",
            context_id=context.context_id,
            phase_name=phase.name,
            status=str(status),
            duration_ms=duration_ms,
        )
        return PhaseResult(
            phase_name=phase.name,
            status=status,
            results=results,
            ui_requests=[request for result in results for request in result.ui_requests],
            duration_ms=duration_ms,
        )

    async def _run_parallel(
        self,
        context: TaskContext,
        phase: ExecutionPhase,
        done: set[str],
        outputs: dict[str, Any],
    ) -> list[SubtaskResult]:
        results = [
            self._previously_completed(subtask, outputs)
            for subtask in phase.subtasks
            if subtask.subtask_id in done
        ]
        remaining = [subtask for subtask in phase.subtasks if subtask.subtask_id not in done]
        gathered = await asyncio.gather(
            *(
                self._run_isolated(context, phase.name, subtask, dict(subtask.input_data))
                for subtask in remaining
            ),
            return_exceptions=True,
        )

        # 兄弟子任务已全部汇合后才重新抛出致命错误
        fatal: BaseException | None = None
        for outcome in gathered:
            if isinstance(outcome, BaseException):
                fatal = fatal or outcome
            else:
                results.append(outcome)

        if fatal is not None:
            raise fatal
        return results

    async def _run_sequential(
        self,
        context: TaskContext,
        phase: ExecutionPhase,
        done: set[str],
        outputs: dict[str, Any],
    ) -> list[SubtaskResult]:
        results: list[SubtaskResult] = []
        passthrough: dict[str, Any] = {}
        for subtask in phase.subtasks:
            if subtask.subtask_id in done:
                previous = self._previously_completed(subtask, outputs)
                results.append(previous)
                passthrough = deep_merge(passthrough, previous.output_data)
                continue

            input_data = deep_merge(subtask.input_data, passthrough)
            result = await self._run_isolated(context, phase.name, subtask, input_data)
            results.append(result)
            passthrough = deep_merge(passthrough, result.output_data)
        return results

    @staticmethod
    def _previously_completed(subtask: Subtask, outputs: dict[str, Any]) -> SubtaskResult:
        output = copy.deepcopy(outputs.get(subtask.subtask_id) or {})
        return SubtaskResult(
            subtask_id=subtask.subtask_id,
            description=subtask.description,
            worker_id=subtask.assigned_worker_id,
            status=SubtaskStatus.COMPLETED,
            data=output,
            output_data=output,
            reasoning="completed in an earlier run",
        )

    async def _run_isolated(
        self,
        context: TaskContext,
        phase_name: str,
        subtask: Subtask,
        input_data: dict[str, Any],
    ) -> SubtaskResult:
        """子任务级错误在这里转为面向用户的输入请求，只有致命错误继续传播"""
        try:
            return await self.run_subtask(context, phase_name, subtask, input_data)
        except (PersistenceAppendFailed, InvalidStatusTransition):
            raise
        except Exception as e:
            log.error(
                "subtask_unexpected_error",
                context_id=context.context_id,
                subtask_id=subtask.subtask_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return self._resilience.user_input_result(
                subtask,
                DispatchFailure(subtask.assigned_worker_id, AttemptState.FAILED, e),
            )

    async def run_subtask(
        self,
        context: TaskContext,
        phase_name: str,
        subtask: Subtask,
        input_data: dict[str, Any],
    ) -> SubtaskResult:
        """执行单个子任务，总是返回结果（只有持久化失败会抛出）"""
        answered = answered_input(context.current_state.data, subtask.subtask_id)
        if answered is not None:
            result = SubtaskResult(
                subtask_id=subtask.subtask_id,
                description=subtask.description,
                worker_id=subtask.assigned_worker_id,
                status=SubtaskStatus.COMPLETED,
                data=answered,
                output_data=answered,
                reasoning="user supplied the requested input",
            )
            await self._record_completed(context, phase_name, result)
            return result

        attempt = partial(self._attempt, context, phase_name, subtask, input_data)
        result, failure = await attempt(subtask.assigned_worker_id)
        if failure is not None:
            result = await self._resilience.recover(context, phase_name, subtask, failure, attempt)

        if result.status == SubtaskStatus.COMPLETED:
            await self._record_completed(context, phase_name, result)
        elif result.status == SubtaskStatus.FAILED:
            await self._entry_log.append(
                context,
                Operation.SUBTASK_FAILED,
                SubtaskFailedPayload(
                    subtask_id=subtask.subtask_id,
                    phase_name=phase_name,
                    worker_id=result.worker_id,
                    attempt_state=str(AttemptState.SUCCESS),
                    error_message=result.reasoning,
                ),
                reasoning=f"Worker {result.worker_id} reported subtask {subtask.subtask_id} as failed",
            )
        return result

    async def _record_completed(
        self,
        context: TaskContext,
        phase_name: str,
        result: SubtaskResult,
    ) -> None:
        await self._entry_log.append(
            context,
            Operation.SUBTASK_COMPLETED,
            SubtaskCompletedPayload(
                subtask_id=result.subtask_id,
                phase_name=phase_name,
                worker_id=result.worker_id,
                status=result.status,
                output_data=result.output_data,
                duration_ms=result.duration_ms,
                substituted_for=result.substituted_for,
            ),
            reasoning=result.reasoning or f"Subtask {result.subtask_id} completed by {result.worker_id}",
        )

    async def _attempt(
        self,
        context: TaskContext,
        phase_name: str,
        subtask: Subtask,
        input_data: dict[str, Any],
        worker_id: str,
    ) -> tuple[SubtaskResult | None, DispatchFailure | None]:
        """对 worker_id 发起一次调度（含超时与重试）"""
        try:
            worker = await self._registry.resolve(worker_id, context.context_id)
        except WorkerUnavailable as e:
            return None, DispatchFailure(worker_id, AttemptState.UNAVAILABLE, e)
        except Exception as e:
            # Capability Directory 自身出错：按不可用处理
            log.warning(
                "worker_resolve_failed",
                context_id=context.context_id,
                worker_id=worker_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None, DispatchFailure(worker_id, AttemptState.UNAVAILABLE, e)

        instruction = WorkerInstruction(
            context_id=context.context_id,
            worker_id=worker_id,
            subtask_id=subtask.subtask_id,
            subtask_description=subtask.description,
            instruction=subtask.instruction,
            input_data=input_data,
            context_data={
                k: copy.deepcopy(v)
                for k, v in context.current_state.data.items()
                if k not in RESERVED_KEYS
            },
            expected_output=subtask.expected_output,
            success_criteria=subtask.success_criteria,
            outbox=self._bus.outbox(context.context_id, worker_id),
        )
        await self._entry_log.append(
            context,
            Operation.SUBTASK_DELEGATED,
            SubtaskDelegatedPayload(
                subtask_id=subtask.subtask_id,
                phase_name=phase_name,
                worker_id=worker_id,
                description=subtask.description,
                instruction=subtask.instruction,
                request_id=instruction.request_id,
            ),
            reasoning=f"Dispatching subtask {subtask.subtask_id} to {worker_id}",
        )

        attempts = self._config.max_retries + 1
        start = time.monotonic()
        last_error: WorkerDispatchFailed | None = None
        response: WorkerResponse | None = None
        for attempt_no in range(1, attempts + 1):
            try:
                async with asyncio.timeout(self._config.timeout_s):
                    raw = await worker.dispatch(instruction)
                response = self._coerce_response(worker_id, raw)
                break
            except TimeoutError as e:
                last_error = WorkerDispatchFailed(
                    worker_id, f"timed out after {self._config.timeout_s}s", e
                )
            except WorkerDispatchFailed as e:
                last_error = e
            except Exception as e:
                last_error = WorkerDispatchFailed(worker_id, f"{type(e).__name__}: {e}", e)

            if attempt_no < attempts:
                log.warning(
                    "subtask_dispatch_retry",
                    context_id=context.context_id,
                    subtask_id=subtask.subtask_id,
                    worker_id=worker_id,
                    attempt=attempt_no,
                    error=str(last_error),
                )

        if response is None:
            return None, DispatchFailure(worker_id, AttemptState.FAILED, last_error)

        result = SubtaskResult(
            subtask_id=subtask.subtask_id,
            description=subtask.description,
            worker_id=worker_id,
            status=response.status,
            data=response.data,
            output_data=response.data,
            ui_requests=[self._tag_request(request, subtask, worker_id) for request in response.ui_requests],
            reasoning=response.reasoning,
            duration_ms=int((time.monotonic() - start) * 1000),
        )

        if result.status == SubtaskStatus.NEEDS_INPUT and not result.ui_requests:
            # 等待输入必须有可答复的请求
            log.warning(
                "needs_input_without_requests",
                context_id=context.context_id,
                subtask_id=subtask.subtask_id,
                worker_id=worker_id,
            )
            request = self._resilience.input_request(
                subtask,
                worker_id,
                reason=response.reasoning or f"{worker_id} needs more information for this step",
                context_reason="worker_needs_input",
            )
            result = result.model_copy(update={"ui_requests": [request]})

        if result.status == SubtaskStatus.DELEGATED:
            await self._entry_log.append(
                context,
                Operation.SUBTASK_DEFERRED,
                SubtaskDeferredPayload(
                    subtask_id=subtask.subtask_id,
                    phase_name=phase_name,
                    worker_id=worker_id,
                    reason=response.reasoning or "delegated by worker",
                    can_proceed=True,
                ),
                reasoning=f"Worker {worker_id} delegated subtask {subtask.subtask_id}",
            )
            result = result.model_copy(update={"can_proceed": True})
        return result, None

    @staticmethod
    def _coerce_response(worker_id: str, raw: Any) -> WorkerResponse:
        if isinstance(raw, WorkerResponse):
            return raw
        if isinstance(raw, dict):
            try:
                return WorkerResponse.model_validate(raw)
            except ValidationError as e:
                raise WorkerDispatchFailed(worker_id, "malformed worker response", e) from e
        raise WorkerDispatchFailed(worker_id, f"unexpected response type {type(raw).__name__}")

    @staticmethod
    def _tag_request(request: UIRequest, subtask: Subtask, worker_id: str) -> UIRequest:
        return request.model_copy(
            update={
                "context": {
                    "subtask_id": subtask.subtask_id,
                    "worker_id": worker_id,
                    **request.context,
                }
            }
        )
