"""Orchestrator 异常体系

传播策略：
- 子任务级错误（WorkerUnavailable / WorkerDispatchFailed）总是在阶段内被捕获，
  转换为 needs_input 或 delegated 结果，绝不逃逸出阶段执行
- InvalidWorkerReference 在计划生成时自动修正，只记录不外抛
- PlanGenerationFailed 仅在能力快照为空时抛出
- 阶段级/计划级错误传播到 TaskOrchestrator，由其统一应用任务级失败策略
"""

from taskloom.core.exceptions import TaskloomError


class PlanGenerationFailed(TaskloomError):
    """无法生成任何可执行计划（能力快照为空）"""

    def __init__(self, context_id: str, reason: str) -> None:
        super().__init__(
            f"Plan generation failed for context {context_id}: {reason}",
            recoverable=False,
        )
        self.context_id = context_id
        self.reason = reason


class InvalidWorkerReference(TaskloomError):
    """计划引用了快照中不存在且无法修正的 Worker"""

    def __init__(self, worker_id: str, subtask_id: str) -> None:
        super().__init__(
            f"Subtask {subtask_id} references unknown worker {worker_id}",
            recoverable=True,
        )
        self.worker_id = worker_id
        self.subtask_id = subtask_id


class WorkerUnavailable(TaskloomError):
    """Worker 不可用（availability != available 或无法解析出实现）"""

    def __init__(self, worker_id: str, reason: str = "") -> None:
        super().__init__(
            f"Worker {worker_id} is unavailable" + (f": {reason}" if reason else ""),
            recoverable=True,
        )
        self.worker_id = worker_id
        self.reason = reason


class WorkerDispatchFailed(TaskloomError):
    """Worker 调用抛出异常、超时或返回了无法识别的结果"""

    def __init__(self, worker_id: str, reason: str, original_error: Exception | None = None) -> None:
        super().__init__(f"Dispatch to worker {worker_id} failed: {reason}", recoverable=True)
        self.worker_id = worker_id
        self.reason = reason
        self.original_error = original_error


class MessageRouteRejected(TaskloomError):
    """Worker 间消息路由不被允许"""

    def __init__(self, from_worker_id: str, to_worker_id: str) -> None:
        super().__init__(
            f"Message route not allowed: {from_worker_id} -> {to_worker_id}",
            recoverable=True,
        )
        self.from_worker_id = from_worker_id
        self.to_worker_id = to_worker_id


class UIResponseRejected(TaskloomError):
    """用户响应无法接收（请求不存在、已答复或任务已终结）"""

    def __init__(self, context_id: str, request_id: str, reason: str) -> None:
        super().__init__(
            f"Response to request {request_id} of context {context_id} rejected: {reason}",
            recoverable=False,
        )
        self.context_id = context_id
        self.request_id = request_id
        self.reason = reason
