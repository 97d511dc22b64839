from __future__ import annotations

from collections.abc import Mapping
from typing import Any
from uuid import UUID

from pydantic import ValidationError

from .errors import EnqueueError
from .models import MAX_PRIORITY, Task, with_max_retries, with_priority
from .payloads import (
    AIProcessingPayload,
    EmailSendingPayload,
    ImageOptimizationPayload,
    ImageProcessingPayload,
    SchemaGenerationPayload,
    TaskType,
    ThumbnailGenerationPayload,
)
from .redis_queue import TaskQueue

# Styles whose output quality users notice most; bumped one step when AI is on.
VISUALLY_SENSITIVE_STYLES = frozenset({"pop_art", "max_colors", "grayscale", "skin_tones"})

AI_PRIORITY_BOOST = 3
AI_PRIORITY_FLOOR = 6
AI_PRIORITY_MIN = 1


def _envelope(model: type, task_type: TaskType, **fields: Any) -> dict[str, Any]:
    try:
        return model(**fields).to_envelope()
    except ValidationError as ex:
        raise EnqueueError(f"invalid {task_type.value} payload: {ex.error_count()} error(s)") from ex


def _non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v != ""


def calculate_ai_priority(
    style: str, use_ai: bool, base_priority: int, parameters: Mapping[str, Any] | None = None
) -> int:
    """
    Priority for an AI stylization job, before the enqueue-time floor.

    Without AI the caller's base is used as-is. With AI: +1 for visually sensitive
    styles, +3 flat, +1 each for a lighting or contrast adjustment, clamped to [1, 10].
    """
    if not use_ai:
        return int(base_priority)
    params = parameters or {}
    priority = int(base_priority)
    if style in VISUALLY_SENSITIVE_STYLES:
        priority += 1
    priority += AI_PRIORITY_BOOST
    if _non_empty_str(params.get("lighting")):
        priority += 1
    if _non_empty_str(params.get("contrast")):
        priority += 1
    return max(AI_PRIORITY_MIN, min(MAX_PRIORITY, priority))


class ImageTaskQueue(TaskQueue):
    """Task queue with typed constructors for the image pipeline job kinds."""

    async def enqueue_image_processing(
        self, image_id: UUID, style: str, parameters: Mapping[str, Any] | None = None
    ) -> Task:
        t = TaskType.IMAGE_PROCESSING
        payload = _envelope(
            ImageProcessingPayload, t, image_id=image_id, style=style, parameters=dict(parameters or {})
        )
        return await self.enqueue(t, payload, with_priority(5), with_max_retries(3))

    async def enqueue_schema_generation(
        self, image_id: UUID, coupon_id: UUID | None, confirmed: bool
    ) -> Task:
        # User-visible and latency-sensitive: high priority, few retries.
        t = TaskType.SCHEMA_GENERATION
        payload = _envelope(
            SchemaGenerationPayload, t, image_id=image_id, coupon_id=coupon_id, confirmed=confirmed
        )
        return await self.enqueue(t, payload, with_priority(8), with_max_retries(2))

    async def enqueue_email_sending(self, email: str, schema_url: str, coupon_code: str) -> Task:
        # Cheap to retry.
        t = TaskType.EMAIL_SENDING
        payload = _envelope(
            EmailSendingPayload, t, email=email, schema_url=schema_url, coupon_code=coupon_code
        )
        return await self.enqueue(t, payload, with_priority(3), with_max_retries(5))

    async def enqueue_image_optimization(self, image_id: UUID, quality: int) -> Task:
        t = TaskType.IMAGE_OPTIMIZATION
        payload = _envelope(ImageOptimizationPayload, t, image_id=image_id, quality=quality)
        return await self.enqueue(t, payload, with_priority(2))

    async def enqueue_thumbnail_generation(self, image_id: UUID, sizes: list[str]) -> Task:
        t = TaskType.THUMBNAIL_GENERATION
        payload = _envelope(ThumbnailGenerationPayload, t, image_id=image_id, sizes=list(sizes))
        return await self.enqueue(t, payload, with_priority(1))

    async def enqueue_ai_processing(
        self,
        image_id: UUID,
        user_email: str,
        style: str,
        use_ai: bool,
        parameters: Mapping[str, Any] | None = None,
        priority: int = 0,
    ) -> Task:
        t = TaskType.AI_PROCESSING
        params = dict(parameters or {})
        payload = _envelope(
            AIProcessingPayload,
            t,
            image_id=image_id,
            user_email=user_email,
            style=style,
            use_ai=use_ai,
            parameters=params,
            priority=priority,
        )
        computed = calculate_ai_priority(style, use_ai, priority, params)
        # AI jobs are always latency-visible.
        computed = max(AI_PRIORITY_FLOOR, computed)
        return await self.enqueue(t, payload, with_priority(computed), with_max_retries(3))

    async def enqueue_priority_ai_processing(
        self,
        image_id: UUID,
        user_email: str,
        style: str,
        use_ai: bool,
        parameters: Mapping[str, Any] | None = None,
    ) -> Task:
        t = TaskType.AI_PRIORITY
        payload = _envelope(
            AIProcessingPayload,
            t,
            image_id=image_id,
            user_email=user_email,
            style=style,
            use_ai=use_ai,
            parameters=dict(parameters or {}),
            priority=MAX_PRIORITY,
        )
        return await self.enqueue(t, payload, with_priority(MAX_PRIORITY), with_max_retries(3))
