"""条目 + 派生状态原子事务封装

在同一 SQLite 事务内原子提交条目写入和 computed_states 缓存更新，
缓存永远不会领先或落后于已提交的历史。
"""

import aiosqlite

from ..models.context import ComputedState, TaskContext
from ..models.entry import ContextEntry
from .context_store import SqliteContextStore
from .entry_store import SqliteEntryStore
from .state_store import SqliteStateStore


def is_sequence_conflict(error: Exception) -> bool:
    """判断 IntegrityError 是否来自 (context_id, sequence_number) 唯一约束"""
    if not isinstance(error, aiosqlite.IntegrityError):
        return False
    text = str(error)
    return (
        "idx_entries_context_seq" in text
        or "context_entries.context_id, context_entries.sequence_number" in text
    )


async def append_entry_and_update_state(
    conn: aiosqlite.Connection,
    entry_store: SqliteEntryStore,
    state_store: SqliteStateStore,
    entry: ContextEntry,
    state: ComputedState,
) -> None:
    """在同一事务内原子提交条目写入和派生状态更新

    Args:
        conn: 数据库连接（需在同一连接上操作以保证事务性）
        entry_store: EntryStore 实例
        state_store: StateStore 实例
        entry: 要写入的条目
        state: 应用该条目后的派生状态

    Raises:
        Exception: 如果事务提交失败，自动回滚
    """
    try:
        await entry_store.append_entry(entry)
        await state_store.upsert_state(entry.context_id, state, entry.sequence_number)
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise


async def create_context_with_initial_entry(
    conn: aiosqlite.Connection,
    context_store: SqliteContextStore,
    entry_store: SqliteEntryStore,
    state_store: SqliteStateStore,
    context: TaskContext,
    entry: ContextEntry,
    state: ComputedState,
) -> None:
    """单事务写入任务定义 + task_created 条目 + 初始派生状态"""
    try:
        await context_store.create_context(context)
        await entry_store.append_entry(entry)
        await state_store.upsert_state(context.context_id, state, entry.sequence_number)
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise
