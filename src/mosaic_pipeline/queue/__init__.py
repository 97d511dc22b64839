"""
Redis-backed priority task queues for the mosaic image pipeline.

This package provides the single integration point used by:
- request handlers, to enqueue image/schema/email/AI jobs (`ImageTaskQueue` helpers)
- worker processes, to dispatch ready tasks to handlers with retry/backoff
- operators, to inspect queue depth and requeue permanently failed tasks
"""

from .adapters import EmailServiceAdapter, ImageServiceAdapter, ProcessingParams
from .errors import (
    DequeueError,
    EnqueueError,
    InvalidPayloadError,
    QueueError,
    UnknownTaskTypeError,
)
from .handlers import HandlerRegistry, build_image_task_handlers
from .image_tasks import ImageTaskQueue, calculate_ai_priority
from .interfaces import QueueStats, TaskHandler
from .manager import AI_IMAGES_QUEUE, IMAGES_QUEUE, QueueManager
from .models import Task, with_delay, with_max_retries, with_priority, with_scheduled_time
from .payloads import TaskType, parse_payload
from .redis_queue import TaskQueue, TaskQueueConfig
from .store import build_redis_client

__all__ = [
    "AI_IMAGES_QUEUE",
    "IMAGES_QUEUE",
    "DequeueError",
    "EmailServiceAdapter",
    "EnqueueError",
    "HandlerRegistry",
    "ImageServiceAdapter",
    "ImageTaskQueue",
    "InvalidPayloadError",
    "ProcessingParams",
    "QueueError",
    "QueueManager",
    "QueueStats",
    "Task",
    "TaskHandler",
    "TaskQueue",
    "TaskQueueConfig",
    "TaskType",
    "UnknownTaskTypeError",
    "build_image_task_handlers",
    "build_redis_client",
    "calculate_ai_priority",
    "parse_payload",
    "with_delay",
    "with_max_retries",
    "with_priority",
    "with_scheduled_time",
]
