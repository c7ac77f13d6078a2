"""TaskTriggerListener 测试 -- task_created 通知驱动编排"""

from taskloom.core.models import SubtaskStatus, TaskStatus, WorkerResponse
from taskloom.orchestrator import TaskTriggerListener


class CompletingWorker:
    def skills(self):
        return set()

    async def dispatch(self, instruction):
        return WorkerResponse(status=SubtaskStatus.COMPLETED, data={"done": True})


class TestTaskTriggerListener:
    async def test_created_task_is_orchestrated(
        self, store, planner, make_orchestrator, make_capability, make_phase, wait_for_status
    ):
        planner.plan = {"phases": [make_phase("Collect", "collector")]}
        orchestrator = make_orchestrator(
            [make_capability("collector")], {"collector": CompletingWorker()}
        )
        listener = TaskTriggerListener(store.change_feed, orchestrator)
        listener.start()
        try:
            context = await orchestrator.create_task("onboarding", "tenant-1")
            state = await wait_for_status(context.context_id, TaskStatus.COMPLETED)
            assert state.data["done"] is True
        finally:
            await listener.stop()

        assert not listener.running
        assert store.change_feed.subscriber_count() == 0

    async def test_start_is_idempotent(self, store, make_orchestrator, make_capability):
        listener = TaskTriggerListener(store.change_feed, make_orchestrator([make_capability("a")]))
        listener.start()
        listener.start()
        assert store.change_feed.subscriber_count() == 1
        await listener.stop()

    async def test_failed_run_keeps_listener_alive(self, store, make_orchestrator, make_capability):
        listener = TaskTriggerListener(store.change_feed, make_orchestrator([make_capability("a")]))
        listener.start()
        try:
            listener.spawn("missing-context")
            await listener.wait_idle()
            assert listener.running
        finally:
            await listener.stop()
