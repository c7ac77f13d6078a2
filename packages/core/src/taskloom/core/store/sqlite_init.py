"""SQLite 数据库初始化

PRAGMA 配置 + 三张表 DDL + 索引创建。
使用 aiosqlite 异步操作。
"""

import aiosqlite

# task_contexts 表 DDL（任务定义，创建后不可变）
_CONTEXTS_DDL = """
CREATE TABLE IF NOT EXISTS task_contexts (
    context_id   TEXT PRIMARY KEY,
    template_id  TEXT NOT NULL,
    tenant_id    TEXT NOT NULL,
    metadata     TEXT NOT NULL DEFAULT '{}',
    created_at   TEXT NOT NULL
);
"""

_CONTEXTS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_contexts_tenant ON task_contexts(tenant_id);",
    "CREATE INDEX IF NOT EXISTS idx_contexts_created_at ON task_contexts(created_at DESC);",
]

# context_entries 表 DDL（append-only）
_ENTRIES_DDL = """
CREATE TABLE IF NOT EXISTS context_entries (
    entry_id         TEXT PRIMARY KEY,
    context_id       TEXT NOT NULL,
    sequence_number  INTEGER NOT NULL,
    timestamp        TEXT NOT NULL,
    actor_type       TEXT NOT NULL,
    actor_id         TEXT NOT NULL,
    actor_version    TEXT NOT NULL DEFAULT '1.0.0',
    operation        TEXT NOT NULL,
    data             TEXT NOT NULL DEFAULT '{}',
    reasoning        TEXT NOT NULL,
    trigger          TEXT,

    FOREIGN KEY (context_id) REFERENCES task_contexts(context_id)
);
"""

_ENTRIES_INDEXES = [
    # 历史内序号唯一约束（确保 sequence_number 严格单调递增）
    (
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_entries_context_seq "
        "ON context_entries(context_id, sequence_number);"
    ),
    "CREATE INDEX IF NOT EXISTS idx_entries_operation ON context_entries(operation);",
]

# computed_states 表 DDL（读缓存，非权威数据）
_STATES_DDL = """
CREATE TABLE IF NOT EXISTS computed_states (
    context_id     TEXT PRIMARY KEY,
    status         TEXT NOT NULL DEFAULT 'pending',
    phase          TEXT NOT NULL DEFAULT 'initialization',
    completeness   INTEGER NOT NULL DEFAULT 0,
    data           TEXT NOT NULL DEFAULT '{}',
    last_sequence  INTEGER NOT NULL DEFAULT 0,
    updated_at     TEXT NOT NULL,

    FOREIGN KEY (context_id) REFERENCES task_contexts(context_id)
);
"""

_STATES_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_states_status ON computed_states(status);",
]


async def init_db(conn: aiosqlite.Connection) -> None:
    """初始化数据库：设置 PRAGMA + 创建表 + 创建索引

    Args:
        conn: aiosqlite 数据库连接
    """
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA foreign_keys = ON;")
    await conn.execute("PRAGMA busy_timeout = 5000;")

    await conn.execute(_CONTEXTS_DDL)
    await conn.execute(_ENTRIES_DDL)
    await conn.execute(_STATES_DDL)

    for idx_sql in _CONTEXTS_INDEXES + _ENTRIES_INDEXES + _STATES_INDEXES:
        await conn.execute(idx_sql)

    await conn.commit()


async def verify_wal_mode(conn: aiosqlite.Connection) -> bool:
    """验证 WAL 模式是否生效

    Returns:
        True 如果 WAL 模式已启用
    """
    cursor = await conn.execute("PRAGMA journal_mode;")
    row = await cursor.fetchone()
    return row is not None and row[0].lower() == "wal"
