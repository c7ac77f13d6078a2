"""SSE 事件流测试 -- 历史回放、Last-Event-ID 续传、SSEHub 广播与桥接"""

import asyncio
import json

from httpx import AsyncClient
from taskloom.core.models import UIRequest, UITemplateType
from taskloom.core.store.change_feed import ChangeFeed, ChangeNotification
from taskloom.gateway.services.sse_hub import UI_BATCH_EVENT, SSEHub, forward_changes


async def _read_events(client: AsyncClient, task_id: str, headers=None) -> list[dict]:
    events = []
    current: dict = {}
    async with client.stream("GET", f"/api/stream/task/{task_id}", headers=headers) as response:
        assert response.status_code == 200
        async for line in response.aiter_lines():
            if line.startswith("id:"):
                current["id"] = line[len("id:"):].strip()
            elif line.startswith("event:"):
                current["event"] = line[len("event:"):].strip()
            elif line.startswith("data:"):
                current["data"] = json.loads(line[len("data:"):].strip())
                events.append(current)
                current = {}
    return events


class TestStreamRoute:
    async def test_not_found(self, client: AsyncClient):
        resp = await client.get("/api/stream/task/01JNONEXISTENT0000000000AA")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "TASK_NOT_FOUND"

    async def test_invalid_last_event_id(self, client: AsyncClient, create_task):
        task_id = await create_task()
        resp = await client.get(
            f"/api/stream/task/{task_id}", headers={"Last-Event-ID": "not-a-number"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_LAST_EVENT_ID"

    async def test_terminal_task_replays_history(
        self, client: AsyncClient, create_task, test_app
    ):
        task_id = await create_task()
        await test_app.state.orchestrator.orchestrate_task(task_id)

        events = await _read_events(client, task_id)

        assert events[0]["event"] == "task_created"
        assert events[0]["id"] == "1"
        assert events[0]["data"]["final"] is False
        assert events[-1]["event"] == "task_completed"
        assert events[-1]["data"]["final"] is True
        assert [int(e["id"]) for e in events] == list(range(1, len(events) + 1))

    async def test_last_event_id_skips_delivered(
        self, client: AsyncClient, create_task, test_app
    ):
        task_id = await create_task()
        await test_app.state.orchestrator.orchestrate_task(task_id)

        events = await _read_events(client, task_id, headers={"Last-Event-ID": "2"})
        assert events[0]["id"] == "3"
        assert events[-1]["data"]["final"] is True


class TestSSEHub:
    async def test_subscribe_unsubscribe(self):
        hub = SSEHub()
        queue = await hub.subscribe("task-1")
        assert hub.subscriber_count("task-1") == 1
        await hub.unsubscribe("task-1", queue)
        assert hub.subscriber_count("task-1") == 0

    async def test_push_ui_batch(self):
        hub = SSEHub()
        queue = await hub.subscribe("task-1")
        request = UIRequest(template_type=UITemplateType.FORM, semantic_data={"title": "Email"})

        await hub.push("task-1", [request])

        message = await asyncio.wait_for(queue.get(), timeout=2.0)
        assert message.event == UI_BATCH_EVENT
        assert message.sequence_number is None
        assert message.data["requests"][0]["request_id"] == request.request_id

    async def test_full_queue_dropped(self):
        hub = SSEHub(queue_maxsize=1)
        await hub.subscribe("task-1")
        await hub.push("task-1", [])
        await hub.push("task-1", [])
        assert hub.subscriber_count("task-1") == 0

    async def test_forward_changes(self):
        feed = ChangeFeed()
        hub = SSEHub()
        feed_queue = feed.subscribe()
        hub_queue = await hub.subscribe("task-1")
        bridge = asyncio.create_task(forward_changes(feed_queue, hub))
        try:
            feed.publish(
                ChangeNotification(
                    task_id="task-1",
                    event_type="task_completed",
                    payload={"operation": "task_completed"},
                    sequence_number=7,
                )
            )
            message = await asyncio.wait_for(hub_queue.get(), timeout=2.0)
        finally:
            bridge.cancel()
            await asyncio.gather(bridge, return_exceptions=True)

        assert message.event == "task_completed"
        assert message.sequence_number == 7
        assert message.final is True
