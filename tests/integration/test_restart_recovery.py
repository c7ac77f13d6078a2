"""重启恢复测试 -- 历史在进程重启后保持，孤儿任务与未启动任务在启动时续跑"""

from datetime import UTC, datetime
from pathlib import Path

from httpx import AsyncClient
from taskloom.core.event_log import EntryLog
from taskloom.core.models import Operation, TaskContext
from taskloom.core.models.payloads import OrchestrationStartedPayload, TaskCreatedPayload
from taskloom.core.store import create_store_group


async def _seed_task(db_path: Path, *, started: bool) -> str:
    """在 gateway 启动前直接写入一个任务（模拟上次进程留下的历史）"""
    store = await create_store_group(str(db_path))
    try:
        log = EntryLog(store)
        context = TaskContext(
            context_id="01JSEEDEDTASK0000000000000",
            template_id="onboarding",
            tenant_id="tenant-1",
            created_at=datetime.now(UTC),
        )
        await log.start_context(
            context,
            TaskCreatedPayload(template_id="onboarding", tenant_id="tenant-1"),
            reasoning="seeded before restart",
        )
        if started:
            await log.append(
                context,
                Operation.ORCHESTRATION_STARTED,
                OrchestrationStartedPayload(orchestrator_version="1.0.0"),
                reasoning="orchestration began before the process died",
            )
        return context.context_id
    finally:
        await store.close()


async def _operations(client: AsyncClient, task_id: str) -> list[str]:
    detail = (await client.get(f"/api/tasks/{task_id}")).json()
    return [e["operation"] for e in detail["entries"]]


class TestRestartRecovery:
    async def test_orphaned_task_recovered_on_startup(
        self, db_path, running_gateway, wait_for_status
    ):
        task_id = await _seed_task(db_path, started=True)

        async with running_gateway() as client:
            state = await wait_for_status(client, task_id, "waiting_for_input")
            assert state["data"]["recovery_count"] == 1
            ops = await _operations(client, task_id)

        assert ops[:3] == ["task_created", "orchestration_started", "task_recovered"]
        assert ops.count("orchestration_started") == 1
        assert "execution_plan_created" in ops

    async def test_pending_task_started_on_startup(
        self, db_path, running_gateway, wait_for_status
    ):
        task_id = await _seed_task(db_path, started=False)

        async with running_gateway() as client:
            await wait_for_status(client, task_id, "waiting_for_input")
            ops = await _operations(client, task_id)

        assert "task_recovered" not in ops
        assert ops[1] == "orchestration_started"

    async def test_waiting_task_survives_restart(self, running_gateway, wait_for_status):
        async with running_gateway() as client:
            task_id = (await client.post("/api/tasks", json={"template_id": "onboarding"})).json()[
                "task_id"
            ]
            state = await wait_for_status(client, task_id, "waiting_for_input")
            request_id = state["data"]["pending_ui_requests"][0]
            before = await _operations(client, task_id)

        async with running_gateway() as client:
            # 等待输入的任务不是孤儿，重启不追加条目
            assert await _operations(client, task_id) == before

            resp = await client.post(
                f"/api/tasks/{task_id}/ui-responses",
                json={"request_id": request_id, "response": {"response": "done"}},
            )
            assert resp.status_code == 202
            await wait_for_status(client, task_id, "completed")
