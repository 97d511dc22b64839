from __future__ import annotations

import asyncio
import threading
from collections.abc import Mapping
from datetime import datetime

import redis.asyncio as redis

from mosaic_pipeline.config import get_settings
from mosaic_pipeline.utils.log import logger

from .adapters import EmailServiceAdapter, ImageServiceAdapter
from .errors import QueueError
from .handlers import build_image_task_handlers
from .image_tasks import ImageTaskQueue
from .interfaces import QueueStats, TaskHandler
from .redis_queue import TaskQueue, TaskQueueConfig
from .store import build_redis_client

IMAGES_QUEUE = "images"
AI_IMAGES_QUEUE = "ai_images"
BUILTIN_QUEUES = (IMAGES_QUEUE, AI_IMAGES_QUEUE)

HandlerTable = Mapping[object, TaskHandler]


class QueueManager:
    """
    Owns every task queue of the process.

    - two built-in image queues ("images", "ai_images")
    - ad hoc named queues, created lazily and idempotently
    - one shared handler table bound to every queue when workers start
    - a periodic archive purge independent of Redis key expiry

    Create one per process and tear it down with `stop_all()`.
    """

    def __init__(
        self,
        client: redis.Redis | None = None,
        *,
        config: TaskQueueConfig | None = None,
        cleanup_interval_s: float | None = None,
    ) -> None:
        self._owns_client = client is None
        self._r = client if client is not None else build_redis_client()
        self._cfg = config or TaskQueueConfig.from_settings()
        if cleanup_interval_s is None:
            cleanup_interval_s = float(get_settings().queue_cleanup_interval_s)
        self._cleanup_interval_s = max(0.05, float(cleanup_interval_s))

        self.image_queue = ImageTaskQueue(IMAGES_QUEUE, self._r, config=self._cfg)
        self.ai_queue = ImageTaskQueue(AI_IMAGES_QUEUE, self._r, config=self._cfg)

        self._lock = threading.RLock()
        self._queues: dict[str, TaskQueue] = {}
        self._handlers: dict[object, TaskHandler] = {}
        self._queue_handlers: dict[str, dict[object, TaskHandler]] = {}
        self._started = False
        self._cleanup_task: asyncio.Task | None = None

    @property
    def client(self) -> redis.Redis:
        return self._r

    def create_queue(self, name: str) -> TaskQueue:
        name = str(name or "").strip()
        if not name:
            raise ValueError("queue name is required")
        builtin = self._builtin(name)
        if builtin is not None:
            return builtin
        with self._lock:
            q = self._queues.get(name)
            if q is not None:
                return q
            q = TaskQueue(name, self._r, config=self._cfg)
            self._queues[name] = q
            started = self._started
        logger.info("queue_created", queue=name)
        if started:
            q.start_worker(self._handlers_for(name))
        return q

    def get_queue(self, name: str) -> TaskQueue | None:
        builtin = self._builtin(name)
        if builtin is not None:
            return builtin
        with self._lock:
            return self._queues.get(name)

    def queue_names(self) -> list[str]:
        with self._lock:
            return [*BUILTIN_QUEUES, *self._queues.keys()]

    def _builtin(self, name: str) -> ImageTaskQueue | None:
        if name == IMAGES_QUEUE:
            return self.image_queue
        if name == AI_IMAGES_QUEUE:
            return self.ai_queue
        return None

    def _all_queues(self) -> list[TaskQueue]:
        with self._lock:
            return [self.image_queue, self.ai_queue, *self._queues.values()]

    def _handlers_for(self, name: str) -> dict[object, TaskHandler]:
        with self._lock:
            return dict(self._queue_handlers.get(name, self._handlers))

    # --- lifecycle ---

    def start_all_workers(
        self,
        handlers: HandlerTable,
        queue_handlers: Mapping[str, HandlerTable] | None = None,
    ) -> None:
        """
        Start a worker on every queue.

        `handlers` is bound to the built-in queues and to every ad hoc queue that has no
        entry in `queue_handlers`. A queue started with an empty table fails every task it
        receives.
        """
        with self._lock:
            self._handlers = dict(handlers or {})
            self._queue_handlers = {str(k): dict(v) for k, v in (queue_handlers or {}).items()}
            self._started = True
        for q in self._all_queues():
            logger.info("queue_worker_starting", queue=q.name)
            q.start_worker(self._handlers_for(q.name))
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(
                self._cleanup_loop(), name="queue.manager.cleanup"
            )
        logger.info("queue_workers_started", queues=self.queue_names())

    def start_image_workers(
        self,
        image: ImageServiceAdapter,
        email: EmailServiceAdapter,
        queue_handlers: Mapping[str, HandlerTable] | None = None,
    ) -> None:
        self.start_all_workers(build_image_task_handlers(image, email), queue_handlers)

    async def stop_all(self, grace: float | None = None) -> None:
        with self._lock:
            self._started = False
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
            self._cleanup_task = None
        queues = self._all_queues()
        await asyncio.gather(*(q.close(grace) for q in queues), return_exceptions=True)
        if self._owns_client:
            await self._r.aclose()
        logger.info("queues_stopped", queues=[q.name for q in queues])

    # --- stats / retention ---

    async def get_stats(self) -> dict[str, QueueStats]:
        out: dict[str, QueueStats] = {}
        for q in self._all_queues():
            try:
                out[q.name] = await q.stats()
            except QueueError as ex:
                logger.warning("queue_stats_failed", queue=q.name, error=str(ex))
                out[q.name] = QueueStats(name=q.name)
        return out

    async def cleanup_old_tasks(self, now: datetime | None = None) -> dict[str, dict[str, int]]:
        """Trim completed (24h) and failed (7d) archive entries on every queue."""
        removed: dict[str, dict[str, int]] = {}
        for q in self._all_queues():
            try:
                res = await q.purge_archives(now)
            except QueueError as ex:
                logger.error("queue_cleanup_failed", queue=q.name, error=str(ex))
                continue
            removed[q.name] = res
            if res["completed"] or res["failed"]:
                logger.info(
                    "queue_cleanup",
                    queue=q.name,
                    removed_completed=res["completed"],
                    removed_failed=res["failed"],
                )
        return removed

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval_s)
            try:
                await self.cleanup_old_tasks()
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                logger.warning("queue_cleanup_loop_error", error=str(ex))
