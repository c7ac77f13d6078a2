"""用户响应路由测试 -- 202 接收、后台续跑、拒绝场景"""

import pytest
from httpx import AsyncClient

pytestmark = pytest.mark.usefixtures("manual_plan")


async def _waiting_task(create_task, test_app) -> tuple[str, str]:
    task_id = await create_task()
    state = await test_app.state.orchestrator.orchestrate_task(task_id)
    assert state.status == "waiting_for_input"
    return task_id, state.data["pending_ui_requests"][0]


class TestSubmitUIResponse:
    async def test_response_resumes_task(
        self, client: AsyncClient, create_task, test_app, wait_for_status
    ):
        task_id, request_id = await _waiting_task(create_task, test_app)

        resp = await client.post(
            f"/api/tasks/{task_id}/ui-responses",
            json={"request_id": request_id, "response": {"email": "ada@example.com"}},
        )
        assert resp.status_code == 202
        body = resp.json()
        assert body["pending_ui_requests"] == []
        assert body["resumed"] is True

        state = await wait_for_status(task_id, "completed")
        assert state.data["email"] == "ada@example.com"

    async def test_response_actor_is_user(self, client: AsyncClient, create_task, test_app):
        task_id, request_id = await _waiting_task(create_task, test_app)
        await client.post(
            f"/api/tasks/{task_id}/ui-responses",
            json={"request_id": request_id, "response": {}, "user_id": "ada"},
        )

        history = await test_app.state.store_group.read_history(task_id)
        received = next(e for e in history if e.operation == "ui_response_received")
        assert received.actor.type == "user"
        assert received.actor.id == "ada"

    async def test_unknown_request_rejected(self, client: AsyncClient, create_task, test_app):
        task_id, _ = await _waiting_task(create_task, test_app)
        resp = await client.post(
            f"/api/tasks/{task_id}/ui-responses",
            json={"request_id": "01JNOTAREQUEST00000000000A", "response": {}},
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "UI_RESPONSE_REJECTED"

    async def test_duplicate_response_rejected(
        self, client: AsyncClient, create_task, test_app, wait_for_status
    ):
        task_id, request_id = await _waiting_task(create_task, test_app)
        body = {"request_id": request_id, "response": {"email": "ada@example.com"}}
        assert (await client.post(f"/api/tasks/{task_id}/ui-responses", json=body)).status_code == 202
        await wait_for_status(task_id, "completed")

        resp = await client.post(f"/api/tasks/{task_id}/ui-responses", json=body)
        assert resp.status_code == 409

    async def test_task_not_found(self, client: AsyncClient):
        resp = await client.post(
            "/api/tasks/01JNONEXISTENT0000000000AA/ui-responses",
            json={"request_id": "r", "response": {}},
        )
        assert resp.status_code == 404

    async def test_request_id_required(self, client: AsyncClient, create_task):
        task_id = await create_task()
        resp = await client.post(f"/api/tasks/{task_id}/ui-responses", json={"response": {}})
        assert resp.status_code == 422
