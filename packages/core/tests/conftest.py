"""packages/core 测试配置 -- 核心层 fixture"""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from taskloom.core.models import TaskContext
from taskloom.core.store import StoreGroup, create_store_group
from ulid import ULID


@pytest.fixture
def make_context():
    """TaskContext 构造器"""

    def _make(context_id: str | None = None, **metadata: Any) -> TaskContext:
        return TaskContext(
            context_id=context_id or str(ULID()),
            template_id="onboarding",
            tenant_id="tenant-1",
            metadata=metadata,
            created_at=datetime.now(UTC),
        )

    return _make


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> AsyncGenerator[StoreGroup, None]:
    """核心层 StoreGroup（临时数据库）"""
    group = await create_store_group(str(tmp_path / "sqlite" / "core_test.db"))
    yield group
    await group.close()
