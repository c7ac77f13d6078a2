"""rebuild_all 测试 -- 从条目表重建派生状态缓存"""

from taskloom.core.event_log import EntryLog
from taskloom.core.models import Operation, TaskStatus
from taskloom.core.state_computer import initial_state, rebuild_all

class TestRebuild:
    async def test_cache_rebuilt_from_history(self, store, make_context):
        entry_log = EntryLog(store)
        context = make_context()
        await entry_log.start_context(
            context, {"template_id": "t", "tenant_id": "x"}, reasoning="created"
        )
        await entry_log.append(context, Operation.ORCHESTRATION_STARTED,
                               {"orchestrator_version": "1.0.0"}, reasoning="start")
        await entry_log.append(context, Operation.DATA_COLLECTED,
                               {"data": {"a": 1}}, reasoning="collect")

        # 人为破坏缓存
        await store.upsert_computed_state(context.context_id, initial_state(), 0)
        assert (await store.get_computed_state(context.context_id)).status == TaskStatus.PENDING

        count = await rebuild_all(store)
        assert count == 3
        rebuilt = await store.get_computed_state(context.context_id)
        assert rebuilt == context.current_state
        assert rebuilt.status == TaskStatus.IN_PROGRESS

    async def test_empty_database(self, store):
        assert await rebuild_all(store) == 0
