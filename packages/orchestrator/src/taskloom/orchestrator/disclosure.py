"""Progressive Disclosure Batcher -- UI 请求批处理

启用时每个任务维护一个待下发队列：
- 队列长度达到 min_batch_size 时，最早的 min_batch_size 个请求作为一批下发
- 剩余请求等待下一次触发（下一阶段的新请求或计划结束时的强制 flush）
- 同一任务已下发 max_user_interruptions - 1 批后，后续触发一次性下发全部待处理请求

批内排序交给 Planner（best-effort）；排序失败保留原顺序，绝不阻塞下发。
正确性只依赖每个请求恰好下发一次，不依赖顺序。
每批先写入一条 ui_requests_created 条目，再推送到 Presentation Channel。
"""

from collections.abc import Sequence
from typing import Any

import structlog

from taskloom.core.event_log import EntryLog
from taskloom.core.models import Operation, TaskContext, UIRequest
from taskloom.core.models.payloads import UIBatchSummary, UIRequestsCreatedPayload

from .config import DisclosureConfig
from .protocols import Planner, PresentationChannel

log = structlog.get_logger()

_PRIORITY_LEVELS: dict[str, int] = {"critical": 4, "high": 3, "medium": 2, "low": 1}


def _priority(request: UIRequest) -> int:
    value = request.context.get("priority", 0)
    if isinstance(value, str):
        return _PRIORITY_LEVELS.get(value.lower(), 0)
    if isinstance(value, int | float):
        return int(value)
    return 0


def apply_ordering(requests: Sequence[UIRequest], ordered_ids: Sequence[str]) -> list[UIRequest]:
    """按推荐顺序重排，忽略未知/重复 ID，遗漏的请求按原顺序追加"""
    by_id = {request.request_id: request for request in requests}
    ordered: list[UIRequest] = []
    seen: set[str] = set()
    for request_id in ordered_ids:
        if request_id in by_id and request_id not in seen:
            ordered.append(by_id[request_id])
            seen.add(request_id)
    ordered.extend(request for request in requests if request.request_id not in seen)
    return ordered


class ProgressiveDisclosureBatcher:
    """按任务批处理 UI 请求"""

    def __init__(
        self,
        entry_log: EntryLog,
        planner: Planner,
        presentation: PresentationChannel,
        config: DisclosureConfig,
    ) -> None:
        self._entry_log = entry_log
        self._planner = planner
        self._presentation = presentation
        self._config = config
        self._pending: dict[str, list[UIRequest]] = {}
        self._batches_sent: dict[str, int] = {}

    def pending(self, context_id: str) -> list[UIRequest]:
        return list(self._pending.get(context_id, []))

    def batches_sent(self, context_id: str) -> int:
        return self._batches_sent.get(context_id, 0)

    async def handle_user_input_requests(
        self,
        context: TaskContext,
        requests: Sequence[UIRequest],
    ) -> None:
        if not requests:
            return

        if not self._config.enabled:
            await self._release(context, list(requests))
            return

        queue = self._pending.setdefault(context.context_id, [])
        queue.extend(requests)
        log.debug(
            "ui_requests_queued",
            context_id=context.context_id,
            added=len(requests),
            pending=len(queue),
        )

        while len(queue) >= self._config.min_batch_size:
            if self._interruptions_exhausted(context.context_id):
                batch = queue[:]
            else:
                batch = queue[: self._config.min_batch_size]
            del queue[: len(batch)]
            await self._release(context, batch)

    async def flush(self, context: TaskContext) -> list[UIRequest]:
        """强制下发全部待处理请求，返回下发的批次（无待处理请求时为空）"""
        queue = self._pending.pop(context.context_id, [])
        if not queue:
            return []
        return await self._release(context, queue)

    async def deliver_immediately(
        self,
        context: TaskContext,
        requests: Sequence[UIRequest],
    ) -> list[UIRequest]:
        """绕过队列直接下发（任务级降级请求）"""
        return await self._release(context, list(requests), reorder=False)

    def clear(self, context_id: str) -> None:
        dropped = self._pending.pop(context_id, [])
        self._batches_sent.pop(context_id, None)
        if dropped:
            log.warning(
                "pending_ui_requests_dropped",
                context_id=context_id,
                count=len(dropped),
            )

    def _interruptions_exhausted(self, context_id: str) -> bool:
        return self.batches_sent(context_id) >= self._config.max_user_interruptions - 1

    async def _order(self, context: TaskContext, batch: list[UIRequest]) -> tuple[list[UIRequest], str]:
        strategy = self._config.batching_strategy
        if len(batch) <= 1 or strategy == "sequential":
            return batch, "original"
        if strategy == "priority":
            return sorted(batch, key=_priority, reverse=True), "priority"

        summaries: list[dict[str, Any]] = [
            {
                "request_id": request.request_id,
                "template_type": str(request.template_type),
                "title": request.semantic_data.get("title", ""),
                "context": request.context,
            }
            for request in batch
        ]
        try:
            ordered_ids = await self._planner.optimize_ordering(summaries)
        except Exception as e:
            log.warning(
                "ui_ordering_failed",
                context_id=context.context_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return batch, "original"
        return apply_ordering(batch, ordered_ids), "optimized"

    async def _release(
        self,
        context: TaskContext,
        batch: list[UIRequest],
        reorder: bool = True,
    ) -> list[UIRequest]:
        if reorder:
            ordered, ordering = await self._order(context, batch)
        else:
            ordered, ordering = batch, "original"

        batch_index = self.batches_sent(context.context_id) + 1
        request_ids = [request.request_id for request in ordered]
        await self._entry_log.append(
            context,
            Operation.UI_REQUESTS_CREATED,
            UIRequestsCreatedPayload(
                ui_requests=ordered,
                summary=UIBatchSummary(
                    count=len(ordered),
                    types=sorted({str(request.template_type) for request in ordered}),
                    request_ids=request_ids,
                ),
                batch_index=batch_index,
                ordering=ordering,
            ),
            reasoning=f"Released batch {batch_index} with {len(ordered)} user input request(s)",
        )
        self._batches_sent[context.context_id] = batch_index

        try:
            await self._presentation.push(context.context_id, ordered)
        except Exception as e:
            # 批次已写入历史，客户端重连后可从历史补齐
            log.warning(
                "ui_batch_push_failed",
                context_id=context.context_id,
                batch_index=batch_index,
                error_type=type(e).__name__,
                error=str(e),
            )

        log.info(
            "ui_batch_released",
            context_id=context.context_id,
            batch_index=batch_index,
            count=len(ordered),
            ordering=ordering,
        )
        return ordered
