"""StateStore SQLite 实现

computed_states 表是 context_entries 的物化视图（读缓存），
永远不是权威数据，可通过 rebuild-states 从条目表重建。
"""

import json
from datetime import UTC, datetime

import aiosqlite

from ..models.context import ComputedState


class SqliteStateStore:
    """StateStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def upsert_state(
        self,
        context_id: str,
        state: ComputedState,
        last_sequence: int,
    ) -> None:
        """写入或覆盖派生状态

        注意：此方法不自动提交事务，需由调用方管理事务。
        """
        await self._conn.execute(
            """
            INSERT INTO computed_states (context_id, status, phase, completeness,
                                         data, last_sequence, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(context_id) DO UPDATE SET
                status = excluded.status,
                phase = excluded.phase,
                completeness = excluded.completeness,
                data = excluded.data,
                last_sequence = excluded.last_sequence,
                updated_at = excluded.updated_at
            """,
            (
                context_id,
                state.status.value,
                state.phase,
                state.completeness,
                json.dumps(state.data, ensure_ascii=False, default=str),
                last_sequence,
                datetime.now(UTC).isoformat(),
            ),
        )

    async def get_state(self, context_id: str) -> tuple[ComputedState, int] | None:
        """查询缓存状态，返回 (state, last_sequence)"""
        cursor = await self._conn.execute(
            "SELECT * FROM computed_states WHERE context_id = ?",
            (context_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_state(row), row[5]

    async def list_context_ids_by_status(self, status: str) -> list[str]:
        """按缓存状态筛选 context_id"""
        cursor = await self._conn.execute(
            "SELECT context_id FROM computed_states WHERE status = ? ORDER BY updated_at ASC",
            (str(status),),
        )
        rows = await cursor.fetchall()
        return [row[0] for row in rows]

    @staticmethod
    def _row_to_state(row: aiosqlite.Row) -> ComputedState:
        """将数据库行转换为 ComputedState 模型"""
        return ComputedState(
            status=row[1],
            phase=row[2],
            completeness=row[3],
            data=json.loads(row[4]) if row[4] else {},
        )
