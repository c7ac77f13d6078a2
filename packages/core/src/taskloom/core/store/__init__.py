"""Taskloom Core Store -- SQLite 持久化实现

提供工厂函数创建共享数据库连接的 Store 实例组。
StoreGroup 实现 PersistenceStore 协议：所有写入在提交后发布到 ChangeFeed。
"""

import asyncio
from pathlib import Path

import aiosqlite
import structlog

from ..config import CHANGE_FEED_QUEUE_SIZE
from ..exceptions import SequenceConflictError
from ..models.context import ComputedState, TaskContext
from ..models.entry import ContextEntry
from ..state_computer import compute_state
from .change_feed import ChangeFeed, ChangeNotification
from .context_store import SqliteContextStore
from .entry_store import SqliteEntryStore
from .protocols import PersistenceStore
from .sqlite_init import init_db
from .state_store import SqliteStateStore
from .transaction import (
    append_entry_and_update_state,
    create_context_with_initial_entry,
    is_sequence_conflict,
)

log = structlog.get_logger()


class StoreGroup:
    """Store 实例组 -- 共享同一个数据库连接

    同一连接上的事务不能交错，写事务由 _write_lock 串行化。
    """

    def __init__(
        self,
        conn: aiosqlite.Connection,
        change_feed: ChangeFeed | None = None,
    ) -> None:
        self.conn = conn
        self.context_store = SqliteContextStore(conn)
        self.entry_store = SqliteEntryStore(conn)
        self.state_store = SqliteStateStore(conn)
        self.change_feed = change_feed or ChangeFeed(CHANGE_FEED_QUEUE_SIZE)
        self._write_lock = asyncio.Lock()

    async def create_context(
        self,
        context: TaskContext,
        entry: ContextEntry,
        state: ComputedState,
    ) -> None:
        """原子写入任务定义与 task_created 条目，提交后发布 task_created 通知"""
        async with self._write_lock:
            await create_context_with_initial_entry(
                self.conn,
                self.context_store,
                self.entry_store,
                self.state_store,
                context,
                entry,
                state,
            )
        self._publish(entry)

    async def get_context(self, context_id: str) -> TaskContext | None:
        """加载任务定义 + 完整历史，current_state 由历史重算"""
        context = await self.context_store.get_context(context_id)
        if context is None:
            return None
        history = await self.entry_store.get_entries(context_id)
        context.history = history
        context.current_state = compute_state(history)
        return context

    async def list_contexts(self, status: str | None = None) -> list[TaskContext]:
        """查询任务列表（不含 history，current_state 取自缓存）"""
        contexts = await self.context_store.list_contexts()
        result = []
        for context in contexts:
            cached = await self.state_store.get_state(context.context_id)
            if cached is not None:
                context.current_state = cached[0]
            if status and context.current_state.status != status:
                continue
            result.append(context)
        return result

    async def list_context_ids(self) -> list[str]:
        return await self.context_store.list_context_ids()

    async def append_entry(self, entry: ContextEntry, state: ComputedState) -> int:
        """追加条目并在同一事务内更新派生状态缓存

        Raises:
            SequenceConflictError: (context_id, sequence_number) 已存在
            aiosqlite.Error: 其他存储错误
        """
        async with self._write_lock:
            try:
                await append_entry_and_update_state(
                    self.conn,
                    self.entry_store,
                    self.state_store,
                    entry,
                    state,
                )
            except aiosqlite.IntegrityError as e:
                if is_sequence_conflict(e):
                    raise SequenceConflictError(
                        entry.context_id, entry.sequence_number
                    ) from e
                raise
        self._publish(entry)
        return entry.sequence_number

    async def read_history(self, context_id: str) -> list[ContextEntry]:
        return await self.entry_store.get_entries(context_id)

    async def read_history_after(
        self,
        context_id: str,
        after_sequence: int,
    ) -> list[ContextEntry]:
        return await self.entry_store.get_entries_after(context_id, after_sequence)

    async def next_sequence(self, context_id: str) -> int:
        return await self.entry_store.get_next_sequence(context_id)

    async def upsert_computed_state(
        self,
        context_id: str,
        state: ComputedState,
        last_sequence: int,
    ) -> None:
        async with self._write_lock:
            try:
                await self.state_store.upsert_state(context_id, state, last_sequence)
                await self.conn.commit()
            except Exception:
                await self.conn.rollback()
                raise

    async def get_computed_state(self, context_id: str) -> ComputedState | None:
        cached = await self.state_store.get_state(context_id)
        return cached[0] if cached is not None else None

    async def list_context_ids_by_status(self, status: str) -> list[str]:
        return await self.state_store.list_context_ids_by_status(status)

    async def close(self) -> None:
        await self.conn.close()

    def _publish(self, entry: ContextEntry) -> None:
        self.change_feed.publish(
            ChangeNotification(
                task_id=entry.context_id,
                event_type=entry.operation,
                payload=entry.model_dump(mode="json"),
                sequence_number=entry.sequence_number,
            )
        )


async def create_store_group(
    db_path: str,
    change_feed: ChangeFeed | None = None,
) -> StoreGroup:
    """创建 Store 实例组

    Args:
        db_path: SQLite 数据库文件路径
        change_feed: 可选的共享变更通知流

    Returns:
        StoreGroup 实例
    """
    # 确保数据库目录存在
    db_dir = Path(db_path).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = await aiosqlite.connect(db_path)
    conn.row_factory = aiosqlite.Row
    await init_db(conn)

    log.info("store_group_initialized", db_path=db_path)
    return StoreGroup(conn=conn, change_feed=change_feed)


__all__ = [
    "StoreGroup",
    "create_store_group",
    "PersistenceStore",
    "ChangeFeed",
    "ChangeNotification",
    "SqliteContextStore",
    "SqliteEntryStore",
    "SqliteStateStore",
    "init_db",
    "append_entry_and_update_state",
    "create_context_with_initial_entry",
]
