"""CLI 入口模块 -- python -m taskloom.core <command>

支持的命令：
  rebuild-states  从 context_entries 表重建 computed_states 表
"""

import asyncio
import sys

from .config import get_db_path


def main() -> None:
    """CLI 主入口"""
    if len(sys.argv) < 2:
        print("用法: python -m taskloom.core <command>")
        print("命令:")
        print("  rebuild-states  从 context_entries 表重建 computed_states 表")
        sys.exit(1)

    command = sys.argv[1]

    if command == "rebuild-states":
        asyncio.run(rebuild_states())
    else:
        print(f"未知命令: {command}")
        print("可用命令: rebuild-states")
        sys.exit(1)


async def rebuild_states() -> None:
    """执行派生状态重建"""
    from .state_computer import rebuild_all
    from .store import create_store_group

    db_path = get_db_path()

    print(f"数据库路径: {db_path}")
    print("开始重建 computed_states...")

    store_group = await create_store_group(db_path)

    try:
        entry_count = await rebuild_all(store_group)
        print(f"重建完成，处理 {entry_count} 条记录")
    finally:
        await store_group.close()


if __name__ == "__main__":
    main()
