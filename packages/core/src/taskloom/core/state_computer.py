"""State Computer -- 由 Context Entry 历史回放计算当前状态

compute_state 是纯函数：同样的历史永远得到同样的结果，接受任意合法前缀，
因此支持按序号/时间点查询历史状态。

每个 Operation 对应 REDUCERS 中的一条合并规则：
- 数据类操作对 data 做深合并（嵌套 dict 递归合并，其余值直接覆盖）
- 生命周期操作覆盖 status / phase
- 未知操作对 data 做浅合并，保证新增条目类型不会破坏状态推导

rebuild_all 从条目表重算 computed_states 缓存表（CLI: rebuild-states）。
"""

import copy
import time
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from .models.context import ComputedState
from .models.entry import ContextEntry
from .models.enums import Operation, PhaseStatus, TaskStatus

if TYPE_CHECKING:
    from .store import StoreGroup

log = structlog.get_logger()

# 编排器维护的数据键，Worker 输出与用户响应合并时不得覆盖
RESERVED_KEYS: frozenset[str] = frozenset(
    {
        "execution_plan",
        "completed_phases",
        "phase_results",
        "active_workers",
        "completed_subtasks",
        "subtask_outputs",
        "failed_subtasks",
        "deferred_subtasks",
        "substitutions",
        "pending_ui_requests",
        "ui_requests",
        "ui_responses",
        "required_fields",
        "goals_achieved",
        "recovery_count",
        "last_recovery",
        "last_error",
        "error",
        "completed_at",
        "last_updated",
    }
)

Reducer = Callable[[ComputedState, dict[str, Any], ContextEntry], None]


def deep_merge(base: Mapping[str, Any], update: Mapping[str, Any]) -> dict[str, Any]:
    """深合并两个 dict，返回新 dict（不修改入参）

    嵌套 dict 递归合并；列表及其他值以 update 为准。
    """
    result = dict(base)
    for key, value in update.items():
        current = result.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            result[key] = deep_merge(current, value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _merge_user_data(data: dict[str, Any], update: Any) -> dict[str, Any]:
    if not isinstance(update, Mapping):
        return data
    filtered = {k: v for k, v in update.items() if k not in RESERVED_KEYS}
    return deep_merge(data, filtered)


def _append_unique(data: dict[str, Any], key: str, value: Any) -> None:
    if value is None:
        return
    items = data.get(key)
    if not isinstance(items, list):
        items = []
        data[key] = items
    if value not in items:
        items.append(value)


def _remove(data: dict[str, Any], key: str, value: Any) -> None:
    items = data.get(key)
    if isinstance(items, list) and value in items:
        items.remove(value)


def _sub_map(data: dict[str, Any], key: str) -> dict[str, Any]:
    mapping = data.get(key)
    if not isinstance(mapping, dict):
        mapping = {}
        data[key] = mapping
    return mapping


def _coerce_status(value: Any, fallback: TaskStatus) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError:
        return fallback


# ---------------------------------------------------------------------------
# Reducers
# ---------------------------------------------------------------------------


def _on_task_created(state: ComputedState, payload: dict[str, Any], entry: ContextEntry) -> None:
    state.status = TaskStatus.PENDING
    state.data = _merge_user_data(state.data, payload.get("initial_data") or {})
    required = payload.get("required_fields")
    if isinstance(required, list) and required:
        state.data["required_fields"] = [str(path) for path in required]


def _on_run_started(state: ComputedState, payload: dict[str, Any], entry: ContextEntry) -> None:
    state.status = TaskStatus.IN_PROGRESS


def _on_task_recovered(state: ComputedState, payload: dict[str, Any], entry: ContextEntry) -> None:
    state.status = TaskStatus.IN_PROGRESS
    state.data["recovery_count"] = int(state.data.get("recovery_count", 0)) + 1
    state.data["last_recovery"] = {
        "reason": payload.get("reason", ""),
        "recovered_at": payload.get("recovered_at"),
    }


def _no_change(state: ComputedState, payload: dict[str, Any], entry: ContextEntry) -> None:
    return None


def _on_execution_plan_created(
    state: ComputedState, payload: dict[str, Any], entry: ContextEntry
) -> None:
    plan = payload.get("plan")
    if isinstance(plan, Mapping):
        state.data["execution_plan"] = copy.deepcopy(dict(plan))
    state.status = TaskStatus.IN_PROGRESS


def _on_phase_started(state: ComputedState, payload: dict[str, Any], entry: ContextEntry) -> None:
    name = payload.get("phase_name")
    if name:
        state.phase = str(name)


def _on_phase_completed(state: ComputedState, payload: dict[str, Any], entry: ContextEntry) -> None:
    name = payload.get("phase_name")
    if not name:
        return
    status = payload.get("status")
    _sub_map(state.data, "phase_results")[name] = status
    if status == PhaseStatus.COMPLETED:
        _append_unique(state.data, "completed_phases", name)


def _on_subtask_delegated(
    state: ComputedState, payload: dict[str, Any], entry: ContextEntry
) -> None:
    _append_unique(state.data, "active_workers", payload.get("worker_id"))


def _on_subtask_completed(
    state: ComputedState, payload: dict[str, Any], entry: ContextEntry
) -> None:
    subtask_id = payload.get("subtask_id")
    output = payload.get("output_data") or {}
    _remove(state.data, "active_workers", payload.get("worker_id"))
    _append_unique(state.data, "completed_subtasks", subtask_id)
    if subtask_id:
        _sub_map(state.data, "subtask_outputs")[subtask_id] = copy.deepcopy(output)
    state.data = _merge_user_data(state.data, output)


def _on_subtask_failed(state: ComputedState, payload: dict[str, Any], entry: ContextEntry) -> None:
    subtask_id = payload.get("subtask_id")
    _remove(state.data, "active_workers", payload.get("worker_id"))
    if subtask_id:
        _sub_map(state.data, "failed_subtasks")[subtask_id] = {
            "worker_id": payload.get("worker_id"),
            "attempt_state": payload.get("attempt_state"),
            "error_message": payload.get("error_message", ""),
        }


def _on_worker_substituted(
    state: ComputedState, payload: dict[str, Any], entry: ContextEntry
) -> None:
    _remove(state.data, "active_workers", payload.get("original_worker_id"))
    _append_unique(state.data, "active_workers", payload.get("substitute_worker_id"))
    subtask_id = payload.get("subtask_id")
    if subtask_id:
        _sub_map(state.data, "substitutions")[subtask_id] = payload.get("substitute_worker_id")


def _on_subtask_deferred(state: ComputedState, payload: dict[str, Any], entry: ContextEntry) -> None:
    _remove(state.data, "active_workers", payload.get("worker_id"))
    _append_unique(state.data, "deferred_subtasks", payload.get("subtask_id"))


def _on_ui_requests_created(
    state: ComputedState, payload: dict[str, Any], entry: ContextEntry
) -> None:
    requests = _sub_map(state.data, "ui_requests")
    for request in payload.get("ui_requests") or []:
        if not isinstance(request, Mapping) or not request.get("request_id"):
            continue
        request_id = request["request_id"]
        requests[request_id] = copy.deepcopy(dict(request))
        _append_unique(state.data, "pending_ui_requests", request_id)


def _on_ui_response_received(
    state: ComputedState, payload: dict[str, Any], entry: ContextEntry
) -> None:
    request_id = payload.get("request_id")
    response = payload.get("response") or {}
    _remove(state.data, "pending_ui_requests", request_id)
    if request_id:
        _sub_map(state.data, "ui_responses")[request_id] = copy.deepcopy(response)
    state.data = _merge_user_data(state.data, response)


def _on_status_updated(state: ComputedState, payload: dict[str, Any], entry: ContextEntry) -> None:
    state.status = _coerce_status(payload.get("to_status"), state.status)


def _on_data_collected(state: ComputedState, payload: dict[str, Any], entry: ContextEntry) -> None:
    state.data = _merge_user_data(state.data, payload.get("data") or {})


def _on_goals_achieved(state: ComputedState, payload: dict[str, Any], entry: ContextEntry) -> None:
    state.data["goals_achieved"] = True


def _on_orchestration_failed(
    state: ComputedState, payload: dict[str, Any], entry: ContextEntry
) -> None:
    state.data["last_error"] = {
        "error_type": payload.get("error_type", ""),
        "error_message": payload.get("error_message", ""),
        "strategy": payload.get("strategy", ""),
    }


def _on_task_completed(state: ComputedState, payload: dict[str, Any], entry: ContextEntry) -> None:
    state.status = TaskStatus.COMPLETED
    state.data["completed_at"] = entry.timestamp.isoformat()


def _on_task_failed(state: ComputedState, payload: dict[str, Any], entry: ContextEntry) -> None:
    state.status = TaskStatus.FAILED
    state.data["error"] = payload.get("error", "")


def _shallow_merge(state: ComputedState, payload: dict[str, Any], entry: ContextEntry) -> None:
    state.data.update(copy.deepcopy(payload))


REDUCERS: dict[Operation, Reducer] = {
    Operation.TASK_CREATED: _on_task_created,
    Operation.ORCHESTRATION_STARTED: _on_run_started,
    Operation.TASK_RESUMED: _on_run_started,
    Operation.TASK_RECOVERED: _on_task_recovered,
    Operation.PLANNER_CALL_FAILED: _no_change,
    Operation.PLAN_VALIDATION_FAILED: _no_change,
    Operation.PLAN_WORKERS_CORRECTED: _no_change,
    Operation.EXECUTION_PLAN_CREATED: _on_execution_plan_created,
    Operation.PHASE_STARTED: _on_phase_started,
    Operation.PHASE_COMPLETED: _on_phase_completed,
    Operation.SUBTASK_DELEGATED: _on_subtask_delegated,
    Operation.SUBTASK_COMPLETED: _on_subtask_completed,
    Operation.SUBTASK_FAILED: _on_subtask_failed,
    Operation.WORKER_SUBSTITUTED: _on_worker_substituted,
    Operation.SUBTASK_DEFERRED: _on_subtask_deferred,
    Operation.UI_REQUESTS_CREATED: _on_ui_requests_created,
    Operation.UI_RESPONSE_RECEIVED: _on_ui_response_received,
    Operation.AGENT_MESSAGE_ROUTED: _no_change,
    Operation.STATUS_UPDATED: _on_status_updated,
    Operation.DATA_COLLECTED: _on_data_collected,
    Operation.GOALS_ACHIEVED: _on_goals_achieved,
    Operation.ORCHESTRATION_FAILED: _on_orchestration_failed,
    Operation.TASK_COMPLETED: _on_task_completed,
    Operation.TASK_FAILED: _on_task_failed,
}


# ---------------------------------------------------------------------------
# Completeness
# ---------------------------------------------------------------------------


def _has_value(data: Mapping[str, Any], path: str) -> bool:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return False
        current = current[part]
    return current not in (None, "", [], {})


def compute_completeness(state: ComputedState) -> int:
    """计算完成度

    - 终态 completed 固定为 100
    - 声明了 required_fields 时：非空必填路径的百分比
    - 否则：已完成阶段占计划阶段总数的百分比；无计划时为 0
    """
    if state.status == TaskStatus.COMPLETED:
        return 100

    data = state.data
    required = data.get("required_fields")
    if isinstance(required, list) and required:
        present = sum(1 for path in required if _has_value(data, str(path)))
        return min(100, present * 100 // len(required))

    plan = data.get("execution_plan")
    phases = plan.get("phases") if isinstance(plan, Mapping) else None
    if phases:
        names = {p.get("name") for p in phases if isinstance(p, Mapping)}
        done = names & set(data.get("completed_phases") or [])
        return min(100, len(done) * 100 // len(phases))

    return 0


# ---------------------------------------------------------------------------
# 回放
# ---------------------------------------------------------------------------


def _apply(state: ComputedState, entry: ContextEntry) -> None:
    """就地应用单条条目（仅用于本模块自有的工作副本）"""
    try:
        reducer = REDUCERS[Operation(entry.operation)]
    except ValueError:
        reducer = _shallow_merge

    try:
        reducer(state, entry.data, entry)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        # payload 形状异常（通常带 validation_warning）时退化为浅合并
        log.debug(
            "state_reducer_fallback",
            context_id=entry.context_id,
            sequence_number=entry.sequence_number,
            operation=entry.operation,
            error=str(e),
        )
        _shallow_merge(state, entry.data, entry)

    state.data["last_updated"] = entry.timestamp.isoformat()
    state.completeness = compute_completeness(state)


def initial_state() -> ComputedState:
    """空历史对应的状态"""
    return ComputedState(
        status=TaskStatus.PENDING,
        phase="initialization",
        completeness=0,
        data={},
    )


def compute_state(history: Iterable[ContextEntry]) -> ComputedState:
    """回放历史得到当前状态（纯函数）"""
    state = initial_state()
    for entry in sorted(history, key=lambda e: e.sequence_number):
        _apply(state, entry)
    return state


def apply_entry(state: ComputedState, entry: ContextEntry) -> ComputedState:
    """在已有状态上应用一条新条目，返回新状态（入参不被修改）"""
    new_state = state.model_copy(deep=True)
    _apply(new_state, entry)
    return new_state


def compute_state_at_sequence(history: Iterable[ContextEntry], sequence_number: int) -> ComputedState:
    """计算序号 sequence_number（含）时刻的状态"""
    return compute_state(e for e in history if e.sequence_number <= sequence_number)


def compute_state_at_time(history: Iterable[ContextEntry], at: datetime) -> ComputedState:
    """计算时间点 at（含）时刻的状态"""
    return compute_state(e for e in history if e.timestamp <= at)


def diff_states(before: ComputedState, after: ComputedState) -> dict[str, Any]:
    """比较两个状态，返回 status/phase/completeness 变化及 data 键的增删改"""
    changes: dict[str, Any] = {}
    for field in ("status", "phase", "completeness"):
        old, new = getattr(before, field), getattr(after, field)
        if old != new:
            changes[field] = {"from": old, "to": new}

    return {
        "changes": changes,
        "added_keys": sorted(k for k in after.data if k not in before.data),
        "removed_keys": sorted(k for k in before.data if k not in after.data),
        "modified_keys": sorted(
            k for k in after.data if k in before.data and before.data[k] != after.data[k]
        ),
    }


async def rebuild_all(store: "StoreGroup") -> int:
    """从 context_entries 表重算 computed_states 缓存表

    Args:
        store: StoreGroup 实例

    Returns:
        处理的条目总数
    """
    start_time = time.monotonic()
    context_ids = await store.list_context_ids()

    await log.ainfo("state_rebuild_started", context_count=len(context_ids))

    entry_count = 0
    for context_id in context_ids:
        history = await store.read_history(context_id)
        entry_count += len(history)
        state = compute_state(history)
        last_sequence = history[-1].sequence_number if history else 0
        await store.upsert_computed_state(context_id, state, last_sequence)

    elapsed_ms = int((time.monotonic() - start_time) * 1000)
    await log.ainfo(
        "state_rebuild_completed",
        context_count=len(context_ids),
        entry_count=entry_count,
        elapsed_ms=elapsed_ms,
    )
    return entry_count
