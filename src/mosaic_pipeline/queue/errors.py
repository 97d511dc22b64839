from __future__ import annotations


class QueueError(RuntimeError):
    pass


class EnqueueError(QueueError):
    """The task could not be serialized or written; it was never queued."""


class DequeueError(QueueError):
    """Transient store failure while polling the ready bands."""


class UnknownTaskTypeError(QueueError):
    def __init__(self, task_type: str) -> None:
        super().__init__(f"no handler found for task type: {task_type}")
        self.task_type = task_type


class InvalidPayloadError(QueueError):
    def __init__(self, task_type: str, detail: str) -> None:
        super().__init__(f"invalid payload for {task_type}: {detail}")
        self.task_type = task_type
        self.detail = detail
