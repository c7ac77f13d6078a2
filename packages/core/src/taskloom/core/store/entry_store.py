"""EntryStore SQLite 实现

context_entries 表 append-only：只允许插入，不允许更新或删除。
sequence_number 同一 context 内严格单调递增。
"""

import json
from datetime import datetime

import aiosqlite

from ..models.entry import Actor, ContextEntry, Trigger


class SqliteEntryStore:
    """EntryStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def append_entry(self, entry: ContextEntry) -> None:
        """追加条目（append-only）

        注意：此方法不自动提交事务，需由调用方管理事务。
        """
        trigger = (
            entry.trigger.model_dump_json() if entry.trigger is not None else None
        )
        await self._conn.execute(
            """
            INSERT INTO context_entries (entry_id, context_id, sequence_number, timestamp,
                                         actor_type, actor_id, actor_version, operation,
                                         data, reasoning, trigger)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.entry_id,
                entry.context_id,
                entry.sequence_number,
                entry.timestamp.isoformat(),
                entry.actor.type.value,
                entry.actor.id,
                entry.actor.version,
                entry.operation,
                json.dumps(entry.data, ensure_ascii=False, default=str),
                entry.reasoning,
                trigger,
            ),
        )

    async def get_entries(self, context_id: str) -> list[ContextEntry]:
        """查询指定 context 的全部条目，按 sequence_number 正序"""
        cursor = await self._conn.execute(
            "SELECT * FROM context_entries WHERE context_id = ? ORDER BY sequence_number ASC",
            (context_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_entry(row) for row in rows]

    async def get_entries_after(
        self,
        context_id: str,
        after_sequence: int,
    ) -> list[ContextEntry]:
        """查询指定序号之后的增量条目（用于 SSE 断线重连）"""
        cursor = await self._conn.execute(
            """
            SELECT * FROM context_entries
            WHERE context_id = ? AND sequence_number > ?
            ORDER BY sequence_number ASC
            """,
            (context_id, after_sequence),
        )
        rows = await cursor.fetchall()
        return [self._row_to_entry(row) for row in rows]

    async def get_next_sequence(self, context_id: str) -> int:
        """获取指定 context 的下一个 sequence_number（MAX+1）"""
        cursor = await self._conn.execute(
            "SELECT COALESCE(MAX(sequence_number), 0) FROM context_entries WHERE context_id = ?",
            (context_id,),
        )
        row = await cursor.fetchone()
        return (row[0] if row else 0) + 1

    @staticmethod
    def _row_to_entry(row: aiosqlite.Row) -> ContextEntry:
        """将数据库行转换为 ContextEntry 模型"""
        return ContextEntry(
            entry_id=row[0],
            context_id=row[1],
            sequence_number=row[2],
            timestamp=datetime.fromisoformat(row[3]),
            actor=Actor(type=row[4], id=row[5], version=row[6]),
            operation=row[7],
            data=json.loads(row[8]) if row[8] else {},
            reasoning=row[9],
            trigger=Trigger.model_validate_json(row[10]) if row[10] else None,
        )
