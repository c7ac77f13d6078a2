"""WorkerRegistry 测试 -- 增量刷新、句柄缓存、不可用标记与替补查找"""

import pytest
from taskloom.core.models import WorkerAvailability
from taskloom.orchestrator import StaticCapabilityDirectory, WorkerRegistry, WorkerUnavailable


class _Worker:
    def skills(self):
        return set()

    async def dispatch(self, instruction):
        return {"status": "completed"}


class TestWorkerRegistry:
    async def test_refresh_is_incremental(self, make_capability):
        directory = StaticCapabilityDirectory([make_capability("a")])
        registry = WorkerRegistry(directory)
        assert set(await registry.refresh()) == {"a"}

        directory.add(make_capability("b"))
        assert set(await registry.refresh()) == {"a", "b"}

    async def test_resolve_caches_handle(self, make_capability):
        worker = _Worker()
        registry = WorkerRegistry(StaticCapabilityDirectory([make_capability("a")], {"a": worker}))
        assert await registry.resolve("a", "ctx") is worker
        assert await registry.resolve("a", "ctx") is worker

    async def test_cached_handle_not_used_once_worker_goes_offline(self, make_capability):
        worker = _Worker()
        directory = StaticCapabilityDirectory([make_capability("a")], {"a": worker})
        registry = WorkerRegistry(directory)
        assert await registry.resolve("a", "ctx") is worker

        directory.add(make_capability("a", availability=WorkerAvailability.OFFLINE))
        await registry.refresh()
        with pytest.raises(WorkerUnavailable, match="offline"):
            await registry.resolve("a", "ctx")

        # 恢复可用后继续使用同一句柄
        directory.add(make_capability("a"))
        await registry.refresh()
        assert await registry.resolve("a", "ctx") is worker

    async def test_resolve_unknown_and_unavailable(self, make_capability):
        registry = WorkerRegistry(
            StaticCapabilityDirectory(
                [make_capability("offline", availability=WorkerAvailability.OFFLINE)]
            )
        )
        with pytest.raises(WorkerUnavailable):
            await registry.resolve("missing", "ctx")
        with pytest.raises(WorkerUnavailable, match="offline"):
            await registry.resolve("offline", "ctx")

    async def test_unresolvable_marked_not_implemented(self, make_capability):
        registry = WorkerRegistry(StaticCapabilityDirectory([make_capability("ghost")]))
        with pytest.raises(WorkerUnavailable):
            await registry.resolve("ghost", "ctx")

        assert registry.snapshot()["ghost"].availability == WorkerAvailability.NOT_IMPLEMENTED
        # 刷新后仍保持不可用
        await registry.refresh()
        assert not registry.snapshot()["ghost"].is_available

    async def test_find_alternative(self, make_capability):
        registry = WorkerRegistry(
            StaticCapabilityDirectory(
                [
                    make_capability("a", {"forms", "profile"}),
                    make_capability("b", {"billing"}),
                    make_capability("c", {"forms"}, availability=WorkerAvailability.BUSY),
                    make_capability("d", {"profile"}),
                ]
            )
        )
        snapshot = await registry.refresh()
        assert registry.find_alternative(snapshot["a"]).worker_id == "d"
        assert registry.find_alternative(snapshot["a"], exclude={"d"}) is None
