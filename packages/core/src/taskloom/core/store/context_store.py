"""ContextStore SQLite 实现

task_contexts 表只保存任务定义（创建后不可变），
历史与派生状态分别由 EntryStore / StateStore 管理。
"""

import json
from datetime import datetime

import aiosqlite

from ..models.context import TaskContext


class SqliteContextStore:
    """ContextStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def create_context(self, context: TaskContext) -> None:
        """插入任务定义行

        注意：此方法不自动提交事务，需由调用方管理事务。
        """
        await self._conn.execute(
            """
            INSERT INTO task_contexts (context_id, template_id, tenant_id, metadata, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                context.context_id,
                context.template_id,
                context.tenant_id,
                json.dumps(context.metadata, ensure_ascii=False, default=str),
                context.created_at.isoformat(),
            ),
        )

    async def get_context(self, context_id: str) -> TaskContext | None:
        """根据 context_id 查询任务定义（不含 history）"""
        cursor = await self._conn.execute(
            "SELECT * FROM task_contexts WHERE context_id = ?",
            (context_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_context(row)

    async def list_contexts(
        self,
        tenant_id: str | None = None,
    ) -> list[TaskContext]:
        """查询任务定义列表，按 created_at 倒序"""
        if tenant_id:
            cursor = await self._conn.execute(
                "SELECT * FROM task_contexts WHERE tenant_id = ? ORDER BY created_at DESC",
                (tenant_id,),
            )
        else:
            cursor = await self._conn.execute(
                "SELECT * FROM task_contexts ORDER BY created_at DESC"
            )
        rows = await cursor.fetchall()
        return [self._row_to_context(row) for row in rows]

    async def list_context_ids(self) -> list[str]:
        """全部 context_id，按创建时间正序"""
        cursor = await self._conn.execute(
            "SELECT context_id FROM task_contexts ORDER BY created_at ASC"
        )
        rows = await cursor.fetchall()
        return [row[0] for row in rows]

    @staticmethod
    def _row_to_context(row: aiosqlite.Row) -> TaskContext:
        """将数据库行转换为 TaskContext 模型"""
        return TaskContext(
            context_id=row[0],
            template_id=row[1],
            tenant_id=row[2],
            metadata=json.loads(row[3]) if row[3] else {},
            created_at=datetime.fromisoformat(row[4]),
        )
