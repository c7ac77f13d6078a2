"""Store Protocol 接口定义

定义 Persistence Store 协作方的抽象接口，
使用 Python Protocol 实现结构化子类型（duck typing），便于替换存储后端。
"""

from typing import Protocol

from ..models.context import ComputedState, TaskContext
from ..models.entry import ContextEntry
from .change_feed import ChangeFeed


class PersistenceStore(Protocol):
    """Persistence Store 接口

    条目表 append-only，按 (context_id, sequence_number) 唯一；
    computed_states 为每个 context 一行的可覆盖读缓存，永远不是权威数据。
    """

    change_feed: ChangeFeed

    async def create_context(
        self,
        context: TaskContext,
        entry: ContextEntry,
        state: ComputedState,
    ) -> None:
        """原子写入任务定义与 task_created 条目"""
        ...

    async def get_context(self, context_id: str) -> TaskContext | None:
        """加载任务定义 + 完整历史，current_state 由历史重算"""
        ...

    async def list_contexts(self, status: str | None = None) -> list[TaskContext]:
        """查询任务列表（不含 history，current_state 取自缓存）"""
        ...

    async def list_context_ids(self) -> list[str]:
        """全部 context_id"""
        ...

    async def append_entry(self, entry: ContextEntry, state: ComputedState) -> int:
        """追加条目并更新缓存，返回 sequence_number

        Raises:
            SequenceConflictError: 序号已被占用
        """
        ...

    async def read_history(self, context_id: str) -> list[ContextEntry]:
        """读取有序历史"""
        ...

    async def read_history_after(
        self,
        context_id: str,
        after_sequence: int,
    ) -> list[ContextEntry]:
        """读取指定序号之后的增量历史"""
        ...

    async def next_sequence(self, context_id: str) -> int:
        """下一个可用序号（MAX+1）"""
        ...

    async def upsert_computed_state(
        self,
        context_id: str,
        state: ComputedState,
        last_sequence: int,
    ) -> None:
        """覆盖写入派生状态缓存"""
        ...

    async def get_computed_state(self, context_id: str) -> ComputedState | None:
        """读取派生状态缓存"""
        ...

    async def list_context_ids_by_status(self, status: str) -> list[str]:
        """按缓存状态筛选 context_id"""
        ...
