from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Any, Protocol
from uuid import UUID

from .models import Task

# Raising from a handler marks the attempt failed; the exception text becomes Task.error.
# Cancellation reaches the handler as asyncio.CancelledError.
TaskHandler = Callable[[Task], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class QueueStats:
    name: str
    pending_tasks: int = 0
    delayed_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ImageService(Protocol):
    """
    Image/mosaic domain service consumed by the queue handlers.

    Implemented outside this package (editing, Stable Diffusion, schema rendering).
    `optimize_image` and `generate_thumbnails` are optional.
    """

    async def process_image(self, image_id: UUID, params: Any) -> None: ...
    async def generate_schema(self, image_id: UUID, confirmed: bool) -> None: ...


class Mailer(Protocol):
    """Outbound email delivery; may be sync or async."""

    def send_schema_email(self, email: str, schema_url: str, coupon_code: str) -> Any: ...
