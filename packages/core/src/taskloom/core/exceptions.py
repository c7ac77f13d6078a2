"""Core 异常体系

PersistenceAppendFailed 对当前编排运行是致命的：序号单调性无法猜测，
运行必须中止，由下次启动时的孤儿任务恢复接管。
"""


class TaskloomError(Exception):
    """Taskloom 基础异常"""

    def __init__(self, message: str, recoverable: bool = True) -> None:
        """
        Args:
            message: 错误描述
            recoverable: 是否可通过重试或降级恢复
        """
        super().__init__(message)
        self.recoverable = recoverable


class ContextNotFoundError(TaskloomError):
    """Task Context 不存在"""

    def __init__(self, context_id: str) -> None:
        super().__init__(f"Task context not found: {context_id}", recoverable=False)
        self.context_id = context_id


class SequenceConflictError(TaskloomError):
    """(context_id, sequence_number) 唯一约束冲突，可重新分配序号重试"""

    def __init__(self, context_id: str, sequence_number: int) -> None:
        super().__init__(
            f"Sequence {sequence_number} already taken for context {context_id}",
            recoverable=True,
        )
        self.context_id = context_id
        self.sequence_number = sequence_number


class PersistenceAppendFailed(TaskloomError):
    """条目追加失败（重试耗尽或存储错误）"""

    def __init__(self, context_id: str, reason: str) -> None:
        super().__init__(
            f"Failed to append entry for context {context_id}: {reason}",
            recoverable=False,
        )
        self.context_id = context_id
        self.reason = reason


class InvalidStatusTransition(TaskloomError):
    """条目会引发 VALID_TRANSITIONS 不允许的状态流转"""

    def __init__(self, context_id: str, from_status: str, to_status: str, operation: str) -> None:
        super().__init__(
            f"Operation {operation} cannot move context {context_id} from {from_status} to {to_status}",
            recoverable=False,
        )
        self.context_id = context_id
        self.from_status = from_status
        self.to_status = to_status
        self.operation = operation
