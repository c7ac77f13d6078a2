"""Event Log -- Context Entry 的唯一追加入口

同一 context 的追加必须串行化：阶段内的子任务并发执行，
多个子任务可能同时完成并尝试写入。EntryLog 为每个 context_id 持有一把
asyncio.Lock，在锁内分配 MAX+1 序号并写入；序号冲突（其他写入方抢先）
时重新分配并重试，重试耗尽或其他存储错误统一抛出 PersistenceAppendFailed。

payload 按 PAYLOAD_MODELS 校验；校验失败时保留原始数据并标记
validation_warning，条目既不丢弃也不重复写入。
会引发状态变化的条目按 VALID_TRANSITIONS 检查，非法流转抛出 InvalidStatusTransition 且不落盘。
"""

import asyncio
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError
from ulid import ULID

from .config import ENTRY_APPEND_MAX_RETRIES
from .exceptions import InvalidStatusTransition, PersistenceAppendFailed, SequenceConflictError
from .models.context import TaskContext
from .models.entry import Actor, ContextEntry, Trigger
from .models.enums import TERMINAL_STATES, ActorType, Operation, TaskStatus, validate_transition
from .models.payloads import PAYLOAD_MODELS
from .state_computer import apply_entry, compute_state
from .store.protocols import PersistenceStore

log = structlog.get_logger()

SYSTEM_ACTOR = Actor(type=ActorType.SYSTEM, id="orchestrator", version="1.0.0")

# 终态后不可再次写入的终结条目
_TERMINAL_OPERATIONS = {Operation.TASK_COMPLETED, Operation.TASK_FAILED}


def validate_payload(operation: str, data: dict[str, Any] | BaseModel) -> tuple[dict[str, Any], str | None]:
    """按操作类型校验 payload

    Returns:
        (规范化后的 payload, 校验错误摘要)；校验通过时错误摘要为 None
    """
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")

    try:
        model = PAYLOAD_MODELS[Operation(operation)]
    except ValueError:
        # 未知操作类型：原样记录
        return dict(data), None

    try:
        return model.model_validate(data).model_dump(mode="json"), None
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        return {**data, "validation_warning": True}, problems


class EntryLog:
    """Context Entry 追加器"""

    def __init__(
        self,
        store: PersistenceStore,
        actor: Actor | None = None,
        max_retries: int = ENTRY_APPEND_MAX_RETRIES,
    ) -> None:
        self._store = store
        self._actor = actor or SYSTEM_ACTOR
        self._max_retries = max_retries
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_guard = asyncio.Lock()

    async def start_context(
        self,
        context: TaskContext,
        data: dict[str, Any] | BaseModel,
        reasoning: str,
        *,
        actor: Actor | None = None,
        trigger: Trigger | None = None,
    ) -> ContextEntry:
        """写入任务定义与第一条 task_created 条目"""
        payload, problems = validate_payload(Operation.TASK_CREATED, data)
        entry = self._build_entry(
            context.context_id,
            1,
            Operation.TASK_CREATED,
            payload,
            self._annotate(reasoning, problems),
            actor,
            trigger,
        )
        state = compute_state([entry])
        try:
            await self._store.create_context(context, entry, state)
        except Exception as e:
            log.error(
                "context_create_failed",
                context_id=context.context_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise PersistenceAppendFailed(context.context_id, str(e)) from e

        context.history = [entry]
        context.current_state = state
        return entry

    async def append(
        self,
        context: TaskContext,
        operation: str,
        data: dict[str, Any] | BaseModel,
        reasoning: str,
        *,
        actor: Actor | None = None,
        trigger: Trigger | None = None,
    ) -> ContextEntry:
        """追加一条条目并更新 context 的 history / current_state

        Raises:
            PersistenceAppendFailed: 重试耗尽或存储错误
            InvalidStatusTransition: 条目引发非法状态流转（条目不写入）
        """
        if not reasoning or not reasoning.strip():
            raise ValueError("reasoning must not be empty")

        context_id = context.context_id
        payload, problems = validate_payload(operation, data)
        if problems:
            log.warning(
                "entry_payload_validation_failed",
                context_id=context_id,
                operation=operation,
                problems=problems,
            )
        reasoning = self._annotate(reasoning, problems)

        lock = await self._get_lock(context_id)
        async with lock:
            for attempt in range(1, self._max_retries + 1):
                try:
                    sequence = await self._store.next_sequence(context_id)
                    if context.last_sequence != sequence - 1:
                        # 其他写入方已追加条目，先同步内存历史
                        await self._reload(context)
                    entry = self._build_entry(
                        context_id, sequence, operation, payload, reasoning, actor, trigger
                    )
                    new_state = apply_entry(context.current_state, entry)
                    self._check_transition(context, operation, new_state.status)
                    await self._store.append_entry(entry, new_state)
                except SequenceConflictError:
                    if attempt < self._max_retries:
                        log.warning(
                            "entry_sequence_conflict_retry",
                            context_id=context_id,
                            attempt=attempt,
                        )
                        continue
                    log.error(
                        "entry_sequence_retries_exhausted",
                        context_id=context_id,
                        operation=operation,
                    )
                    raise PersistenceAppendFailed(
                        context_id, "sequence conflict retries exhausted"
                    ) from None
                except (PersistenceAppendFailed, InvalidStatusTransition):
                    raise
                except Exception as e:
                    log.error(
                        "entry_append_failed",
                        context_id=context_id,
                        operation=operation,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    raise PersistenceAppendFailed(context_id, str(e)) from e

                context.history.append(entry)
                context.current_state = new_state
                break

        if context.current_state.status in TERMINAL_STATES:
            await self.release(context_id)

        log.debug(
            "entry_appended",
            context_id=context_id,
            operation=operation,
            sequence_number=entry.sequence_number,
        )
        return entry

    async def release(self, context_id: str) -> None:
        """任务终态后清理 lock，避免字典无限增长。"""
        async with self._locks_guard:
            lock = self._locks.get(context_id)
            if lock is not None and not lock.locked():
                self._locks.pop(context_id, None)

    def has_lock(self, context_id: str) -> bool:
        return context_id in self._locks

    async def _get_lock(self, context_id: str) -> asyncio.Lock:
        """获取 context 级别锁，序列化同一任务的条目写入。"""
        async with self._locks_guard:
            lock = self._locks.get(context_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[context_id] = lock
            return lock

    @staticmethod
    def _check_transition(context: TaskContext, operation: str, to_status: TaskStatus) -> None:
        from_status = context.current_state.status
        allowed = from_status == to_status or validate_transition(from_status, to_status)
        if from_status in TERMINAL_STATES and operation in _TERMINAL_OPERATIONS:
            allowed = False
        if allowed:
            return
        log.error(
            "invalid_status_transition",
            context_id=context.context_id,
            operation=operation,
            from_status=str(from_status),
            to_status=str(to_status),
        )
        raise InvalidStatusTransition(context.context_id, from_status, to_status, str(operation))

    async def _reload(self, context: TaskContext) -> None:
        history = await self._store.read_history(context.context_id)
        context.history = history
        context.current_state = compute_state(history)
        log.info(
            "context_history_reloaded",
            context_id=context.context_id,
            entry_count=len(history),
        )

    def _build_entry(
        self,
        context_id: str,
        sequence: int,
        operation: str,
        payload: dict[str, Any],
        reasoning: str,
        actor: Actor | None,
        trigger: Trigger | None,
    ) -> ContextEntry:
        return ContextEntry(
            entry_id=str(ULID()),
            context_id=context_id,
            sequence_number=sequence,
            timestamp=datetime.now(UTC),
            actor=actor or self._actor,
            operation=str(operation),
            data=payload,
            reasoning=reasoning,
            trigger=trigger,
        )

    @staticmethod
    def _annotate(reasoning: str, problems: str | None) -> str:
        if not problems:
            return reasoning
        return f"{reasoning} [payload validation warning: {problems}]"
