"""配置常量模块 -- 可通过环境变量覆盖

包含数据库路径、Worker 能力配置目录、SSE 心跳、变更通知队列大小等可配置常量。
"""

import os
from pathlib import Path


def _get_base_dir() -> Path:
    """获取项目 data 基础目录"""
    return Path(os.environ.get("TASKLOOM_DATA_DIR", "data"))


def get_db_path() -> str:
    """获取 SQLite 数据库路径"""
    return os.environ.get(
        "TASKLOOM_DB_PATH",
        str(_get_base_dir() / "sqlite" / "taskloom.db"),
    )


def get_capabilities_dir() -> Path:
    """获取 Worker 能力声明（YAML）目录"""
    return Path(os.environ.get("TASKLOOM_CAPABILITIES_DIR", "config/agents"))


# SSE 心跳间隔（秒）
SSE_HEARTBEAT_INTERVAL: int = int(
    os.environ.get("TASKLOOM_SSE_HEARTBEAT_INTERVAL", "15")
)

# 变更通知订阅队列容量（满则丢弃该订阅者）
CHANGE_FEED_QUEUE_SIZE: int = int(
    os.environ.get("TASKLOOM_CHANGE_FEED_QUEUE_SIZE", "256")
)

# 序号冲突时的最大重试次数
ENTRY_APPEND_MAX_RETRIES: int = 3

# 失败条目中响应摘要的截断长度
RESPONSE_EXCERPT_LENGTH: int = 500
