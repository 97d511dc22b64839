from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from mosaic_pipeline.utils.log import logger

from .interfaces import ImageService, Mailer


@dataclass(slots=True)
class ProcessingParams:
    style: str = ""
    use_ai: bool = False
    contrast: str = ""
    lighting: str = ""
    brightness: float | None = None
    saturation: float | None = None
    settings: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_parameters(
        cls, style: str, parameters: dict[str, Any] | None, *, use_ai: bool | None = None
    ) -> ProcessingParams:
        """
        Build params from a loose parameter bag; values of the wrong type are ignored.
        """
        p = dict(parameters or {})
        out = cls(style=str(style or ""))
        if isinstance(p.get("contrast"), str):
            out.contrast = p["contrast"]
        if isinstance(p.get("lighting"), str):
            out.lighting = p["lighting"]
        for name in ("brightness", "saturation"):
            v = p.get(name)
            if isinstance(v, (int, float)) and not isinstance(v, bool):
                setattr(out, name, float(v))
        if isinstance(p.get("settings"), dict):
            out.settings = dict(p["settings"])
        if use_ai is not None:
            out.use_ai = bool(use_ai)
        elif isinstance(p.get("use_ai"), bool):
            out.use_ai = p["use_ai"]
        return out


class ImageServiceAdapter:
    """
    Narrow view of the image service used by queue handlers.

    Services that do not implement optimization/thumbnails are tolerated: those jobs
    complete as no-ops.
    """

    def __init__(self, image_service: ImageService) -> None:
        self._svc = image_service

    async def process_image_with_style(
        self, image_id: UUID, style: str, parameters: dict[str, Any] | None = None
    ) -> None:
        params = ProcessingParams.from_parameters(style, parameters)
        await self._svc.process_image(image_id, params)

    async def process_image_with_ai(
        self,
        image_id: UUID,
        style: str,
        use_ai: bool,
        parameters: dict[str, Any] | None = None,
    ) -> None:
        params = ProcessingParams.from_parameters(style, parameters, use_ai=use_ai)
        await self._svc.process_image(image_id, params)

    async def generate_schema(self, image_id: UUID, confirmed: bool) -> None:
        await self._svc.generate_schema(image_id, bool(confirmed))

    async def optimize_image(self, image_id: UUID, quality: int) -> None:
        fn = getattr(self._svc, "optimize_image", None)
        if fn is None:
            logger.info("image_optimize_unsupported", image_id=str(image_id))
            return
        await fn(image_id, int(quality))

    async def generate_thumbnails(self, image_id: UUID, sizes: list[str]) -> None:
        fn = getattr(self._svc, "generate_thumbnails", None)
        if fn is None:
            logger.info("image_thumbnails_unsupported", image_id=str(image_id))
            return
        await fn(image_id, list(sizes))


class EmailServiceAdapter:
    def __init__(self, mailer: Mailer) -> None:
        self._mailer = mailer

    async def send_schema(self, email: str, schema_url: str, coupon_code: str) -> None:
        res = self._mailer.send_schema_email(email, schema_url, coupon_code)
        if asyncio.iscoroutine(res):
            await res
