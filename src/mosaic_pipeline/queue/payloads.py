"""
Per-type payload variants.

Tasks travel through Redis as a generic JSON envelope (`Task.payload` is a plain dict);
each handler turns it back into the variant for its type with `parse_payload`, so field
validation lives next to the job that needs it rather than in the engine.
"""

from __future__ import annotations

from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidPayloadError
from .models import Task


class TaskType(str, Enum):
    IMAGE_PROCESSING = "image_processing"
    SCHEMA_GENERATION = "schema_generation"
    EMAIL_SENDING = "email_sending"
    IMAGE_OPTIMIZATION = "image_optimization"
    THUMBNAIL_GENERATION = "thumbnail_generation"
    AI_PROCESSING = "ai_processing"  # Stable Diffusion stylization
    AI_PRIORITY = "ai_priority"  # explicitly urgent AI stylization


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    def to_envelope(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class ImageProcessingPayload(_Payload):
    image_id: UUID
    style: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)


class SchemaGenerationPayload(_Payload):
    image_id: UUID
    coupon_id: UUID | None = None
    confirmed: bool = False


class EmailSendingPayload(_Payload):
    email: str
    schema_url: str
    coupon_code: str

    @field_validator("email")
    @classmethod
    def _email_shape(cls, v: str) -> str:
        v = str(v or "").strip()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("not an email address")
        return v


class ImageOptimizationPayload(_Payload):
    image_id: UUID
    quality: int = Field(default=85, ge=1, le=100)


class ThumbnailGenerationPayload(_Payload):
    image_id: UUID
    sizes: list[str] = Field(default_factory=list)


class AIProcessingPayload(_Payload):
    image_id: UUID
    user_email: str = ""
    style: str = ""
    use_ai: bool = True
    parameters: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0


PAYLOAD_MODELS: dict[str, type[_Payload]] = {
    TaskType.IMAGE_PROCESSING.value: ImageProcessingPayload,
    TaskType.SCHEMA_GENERATION.value: SchemaGenerationPayload,
    TaskType.EMAIL_SENDING.value: EmailSendingPayload,
    TaskType.IMAGE_OPTIMIZATION.value: ImageOptimizationPayload,
    TaskType.THUMBNAIL_GENERATION.value: ThumbnailGenerationPayload,
    TaskType.AI_PROCESSING.value: AIProcessingPayload,
    TaskType.AI_PRIORITY.value: AIProcessingPayload,
}


def parse_payload(task: Task) -> Any:
    model = PAYLOAD_MODELS.get(task.type)
    if model is None:
        raise InvalidPayloadError(task.type, "no payload model registered")
    try:
        return model.model_validate(task.payload)
    except ValidationError as ex:
        fields = ",".join(sorted({".".join(str(p) for p in e["loc"]) for e in ex.errors()}))
        raise InvalidPayloadError(task.type, f"invalid fields: {fields}") from ex
