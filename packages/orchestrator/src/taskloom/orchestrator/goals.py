"""Goal/Completion Check -- 每个阶段结束后判断主要目标是否已达成

goals 的两种形态：
- 字符串列表（无结构）：没有逐项判定标准，始终视为未达成，由阶段耗尽来结束任务
- {"primary": [...]}（结构化）：每个 required 目标按自身 criterion 判定：
  声明了 criterion.data_paths 时要求这些路径在状态数据中非空，
  否则以 completeness >= 100 为准
"""

from collections.abc import Mapping
from typing import Any

from taskloom.core.models import ComputedState, TaskContext


def _path_present(data: Mapping[str, Any], path: str) -> bool:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return False
        current = current[part]
    return current not in (None, "", [], {})


def goal_satisfied(goal: Mapping[str, Any], state: ComputedState) -> bool:
    criterion = goal.get("criterion") or {}
    paths = criterion.get("data_paths") if isinstance(criterion, Mapping) else None
    if paths:
        return all(_path_present(state.data, str(path)) for path in paths)
    return state.completeness >= 100


def are_goals_achieved(context: TaskContext) -> bool:
    goals = context.metadata.get("goals")
    if not isinstance(goals, Mapping):
        return False

    primary = goals.get("primary") or []
    required = [
        goal for goal in primary if isinstance(goal, Mapping) and goal.get("required", True)
    ]
    if not required:
        return False
    return all(goal_satisfied(goal, context.current_state) for goal in required)


def goal_names(context: TaskContext) -> list[str]:
    """用于 goals_achieved 条目的目标标识列表"""
    goals = context.metadata.get("goals")
    if isinstance(goals, Mapping):
        goals = goals.get("primary") or []
    names: list[str] = []
    for goal in goals or []:
        if isinstance(goal, str):
            names.append(goal)
        elif isinstance(goal, Mapping):
            names.append(str(goal.get("id") or goal.get("description") or ""))
    return [name for name in names if name]
