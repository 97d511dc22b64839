from __future__ import annotations

from collections.abc import Iterator, Mapping
from types import MappingProxyType

from mosaic_pipeline.utils.log import logger

from .adapters import EmailServiceAdapter, ImageServiceAdapter
from .interfaces import TaskHandler
from .models import Task
from .payloads import (
    AIProcessingPayload,
    EmailSendingPayload,
    ImageOptimizationPayload,
    ImageProcessingPayload,
    SchemaGenerationPayload,
    TaskType,
    ThumbnailGenerationPayload,
    parse_payload,
)


def _type_key(task_type: object) -> str:
    return str(getattr(task_type, "value", task_type))


class HandlerRegistry(Mapping[str, TaskHandler]):
    """
    Per-queue task type -> handler table, frozen when a worker starts.
    """

    def __init__(self, handlers: Mapping[object, TaskHandler] | None = None) -> None:
        table = {_type_key(k): v for k, v in (handlers or {}).items()}
        self._handlers = MappingProxyType(table)

    def __getitem__(self, task_type: str) -> TaskHandler:
        return self._handlers[_type_key(task_type)]

    def __iter__(self) -> Iterator[str]:
        return iter(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)

    def types(self) -> list[str]:
        return sorted(self._handlers)


def build_image_task_handlers(
    image: ImageServiceAdapter, email: EmailServiceAdapter
) -> dict[str, TaskHandler]:
    """
    Handler table for every image-pipeline task type.

    Each handler validates its own payload variant; a bad payload fails the attempt like any
    other handler error.
    """

    async def process_image(task: Task) -> None:
        p: ImageProcessingPayload = parse_payload(task)
        await image.process_image_with_style(p.image_id, p.style, p.parameters)

    async def generate_schema(task: Task) -> None:
        p: SchemaGenerationPayload = parse_payload(task)
        await image.generate_schema(p.image_id, p.confirmed)

    async def send_schema(task: Task) -> None:
        p: EmailSendingPayload = parse_payload(task)
        await email.send_schema(p.email, p.schema_url, p.coupon_code)

    async def optimize_image(task: Task) -> None:
        p: ImageOptimizationPayload = parse_payload(task)
        await image.optimize_image(p.image_id, p.quality)

    async def generate_thumbnails(task: Task) -> None:
        p: ThumbnailGenerationPayload = parse_payload(task)
        await image.generate_thumbnails(p.image_id, p.sizes)

    async def ai_processing(task: Task) -> None:
        p: AIProcessingPayload = parse_payload(task)
        logger.info(
            "ai_processing_start",
            task_id=task.id,
            image_id=str(p.image_id),
            style=p.style,
            use_ai=p.use_ai,
            priority=task.priority,
        )
        await image.process_image_with_ai(p.image_id, p.style, p.use_ai, p.parameters)

    return {
        TaskType.IMAGE_PROCESSING.value: process_image,
        TaskType.SCHEMA_GENERATION.value: generate_schema,
        TaskType.EMAIL_SENDING.value: send_schema,
        TaskType.IMAGE_OPTIMIZATION.value: optimize_image,
        TaskType.THUMBNAIL_GENERATION.value: generate_thumbnails,
        TaskType.AI_PROCESSING.value: ai_processing,
        TaskType.AI_PRIORITY.value: ai_processing,
    }
