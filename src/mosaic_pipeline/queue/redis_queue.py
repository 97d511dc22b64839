from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from mosaic_pipeline.config import get_settings
from mosaic_pipeline.ops import metrics
from mosaic_pipeline.utils.log import logger, set_queue, set_task_id

from .errors import DequeueError, EnqueueError, QueueError, UnknownTaskTypeError
from .handlers import HandlerRegistry
from .interfaces import QueueStats, TaskHandler
from .models import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    Task,
    TaskOption,
    new_id,
    now_utc,
    retry_delay,
)
from .store import MOVE_DELAYED_LUA, REQUEUE_FAILED_LUA, QueueKeys, queue_keys


@dataclass(frozen=True, slots=True)
class TaskQueueConfig:
    dequeue_timeout_s: float
    sweep_interval_s: float
    backoff_unit_s: float
    default_priority: int
    default_max_retries: int
    completed_ttl_s: int
    failed_ttl_s: int
    shutdown_grace_s: float

    @classmethod
    def from_settings(cls) -> TaskQueueConfig:
        s = get_settings()
        return cls(
            dequeue_timeout_s=max(0.0, float(s.queue_dequeue_timeout_s)),
            sweep_interval_s=max(0.05, float(s.queue_sweep_interval_s)),
            backoff_unit_s=max(0.0, float(s.queue_retry_backoff_unit_s)),
            default_priority=int(s.queue_default_priority),
            default_max_retries=max(0, int(s.queue_default_max_retries)),
            completed_ttl_s=max(1, int(s.queue_completed_ttl_s)),
            failed_ttl_s=max(1, int(s.queue_failed_ttl_s)),
            shutdown_grace_s=max(0.0, float(s.queue_shutdown_grace_s)),
        )


def _type_name(task_type: object) -> str:
    return str(getattr(task_type, "value", task_type) or "").strip()


def _redis_timeout(t: float) -> int | float:
    # Whole seconds go out as integers so pre-6.0 servers accept them.
    return int(t) if float(t).is_integer() else float(t)


def _error_text(err: BaseException | str) -> str:
    if isinstance(err, BaseException):
        return str(err) or err.__class__.__name__
    return str(err)


class TaskQueue:
    """
    One named logical queue on Redis.

    Layout (see QueueKeys):
    - 11 ready bands (lists, LPUSH/BRPOP => FIFO per band), served from priority 10 down to 0
    - a delay set (zset scored by scheduled Unix time)
    - completed / failed archives (zsets scored by settle time, key TTL refreshed on insert)

    A task lives in exactly one of those structures, or is in flight on the single worker
    that popped it.
    """

    def __init__(
        self,
        name: str,
        client: redis.Redis,
        *,
        config: TaskQueueConfig | None = None,
        keys: QueueKeys | None = None,
    ) -> None:
        self.name = str(name)
        self._r = client
        self._cfg = config or TaskQueueConfig.from_settings()
        self._keys = keys or queue_keys(self.name)
        self._move_script = client.register_script(MOVE_DELAYED_LUA)
        self._requeue_script = client.register_script(REQUEUE_FAILED_LUA)

        self._stopping = False
        self._generation = 0
        self._sweep_task: asyncio.Task | None = None
        self._dispatch_task: asyncio.Task | None = None
        self._inflight: Task | None = None
        self._handlers = HandlerRegistry()

    @property
    def keys(self) -> QueueKeys:
        return self._keys

    @property
    def config(self) -> TaskQueueConfig:
        return self._cfg

    @property
    def is_running(self) -> bool:
        return self._dispatch_task is not None and not self._dispatch_task.done()

    @property
    def inflight(self) -> Task | None:
        return self._inflight

    # --- producer side ---

    async def enqueue(
        self, task_type: object, payload: Mapping[str, Any] | None = None, *opts: TaskOption
    ) -> Task:
        task = Task(
            id=new_id(),
            type=_type_name(task_type),
            payload=dict(payload or {}),
            priority=self._cfg.default_priority,
            max_retries=self._cfg.default_max_retries,
        )
        for opt in opts:
            opt(task)
        if not task.type:
            raise EnqueueError("task type is required")
        if task.priority < MIN_PRIORITY or task.priority > MAX_PRIORITY:
            raise EnqueueError(
                f"priority {task.priority} outside {MIN_PRIORITY}..{MAX_PRIORITY}; no ready band"
            )

        if task.scheduled_at is not None and task.scheduled_at > now_utc():
            await self._enqueue_delayed(task)
        else:
            data = self._serialize(task)
            try:
                await self._r.lpush(self._keys.band(task.priority), data)
            except RedisError as ex:
                logger.error(
                    "task_enqueue_failed",
                    queue=self.name,
                    task_id=task.id,
                    task_type=task.type,
                    error=str(ex),
                )
                raise EnqueueError(f"failed to enqueue task: {ex}") from ex
            logger.info(
                "task_enqueued",
                queue=self.name,
                task_id=task.id,
                task_type=task.type,
                priority=task.priority,
            )

        metrics.tasks_enqueued.labels(queue=self.name, type=task.type).inc()
        return task

    async def _enqueue_delayed(self, task: Task) -> None:
        assert task.scheduled_at is not None
        data = self._serialize(task)
        score = float(task.scheduled_at.timestamp())
        try:
            await self._r.zadd(self._keys.delayed, {data: score})
        except RedisError as ex:
            logger.error(
                "task_enqueue_delayed_failed",
                queue=self.name,
                task_id=task.id,
                task_type=task.type,
                error=str(ex),
            )
            raise EnqueueError(f"failed to enqueue delayed task: {ex}") from ex
        logger.info(
            "task_enqueued_delayed",
            queue=self.name,
            task_id=task.id,
            task_type=task.type,
            scheduled_at=task.scheduled_at.isoformat(),
        )

    def _serialize(self, task: Task) -> str:
        try:
            return task.to_json()
        except (TypeError, ValueError) as ex:
            logger.error(
                "task_serialize_failed",
                queue=self.name,
                task_id=task.id,
                task_type=task.type,
                error=str(ex),
            )
            raise EnqueueError(f"failed to serialize task: {ex}") from ex

    # --- consumer side ---

    async def dequeue(self, timeout: float | None = None) -> Task | None:
        """
        Pop the next ready task, highest band first, oldest first within a band.

        One multi-key BRPOP covers all bands: Redis checks the keys in the order given, so a
        lower band is only served when every higher band is empty. `timeout <= 0` polls once
        without blocking. Returns None when nothing became ready in time.
        """
        t = self._cfg.dequeue_timeout_s if timeout is None else max(0.0, float(timeout))
        band_keys = self._keys.bands_desc()
        try:
            if t <= 0:
                raw = None
                for key in band_keys:
                    raw = await self._r.rpop(key)
                    if raw is not None:
                        break
                if raw is None:
                    return None
            else:
                res = await self._r.brpop(band_keys, timeout=_redis_timeout(t))
                if not res:
                    return None
                key, raw = res
        except RedisError as ex:
            logger.warning("task_dequeue_failed", queue=self.name, error=str(ex))
            raise DequeueError(f"failed to dequeue task: {ex}") from ex

        try:
            task = Task.from_json(raw)
        except (ValueError, KeyError, TypeError) as ex:
            logger.error(
                "task_decode_failed",
                queue=self.name,
                band=self._keys.priority_of(key),
                error=str(ex),
            )
            return None
        return task

    async def process_delayed_tasks(self, now: datetime | None = None) -> int:
        """
        Move every due delayed task into its ready band. Returns how many this call moved.

        Each move is a single Lua step (ZREM then LPUSH only if the ZREM won), so concurrent
        sweepers never move the same entry twice and a crash cannot drop it in between.
        """
        ts = float((now or now_utc()).timestamp())
        try:
            due = await self._r.zrangebyscore(self._keys.delayed, "-inf", ts)
        except RedisError as ex:
            logger.warning("delayed_fetch_failed", queue=self.name, error=str(ex))
            raise QueueError(f"failed to get delayed tasks: {ex}") from ex

        moved = 0
        for raw in due or []:
            try:
                task = Task.from_json(raw)
                band = self._keys.band(task.priority)
            except (ValueError, KeyError, TypeError) as ex:
                logger.error("delayed_task_decode_failed", queue=self.name, error=str(ex))
                await self._drop_delayed(raw)
                continue
            try:
                ok = await self._move_script(keys=[self._keys.delayed, band], args=[raw])
            except RedisError as ex:
                logger.warning(
                    "delayed_task_move_failed", queue=self.name, task_id=task.id, error=str(ex)
                )
                continue
            if int(ok or 0) == 1:
                moved += 1
                logger.info(
                    "delayed_task_moved",
                    queue=self.name,
                    task_id=task.id,
                    task_type=task.type,
                    priority=task.priority,
                )
        if moved:
            metrics.delayed_moved.labels(queue=self.name).inc(moved)
        return moved

    async def _drop_delayed(self, raw: str | bytes) -> None:
        # Undecodable entries can never become ready; same treatment as in dequeue().
        try:
            await self._r.zrem(self._keys.delayed, raw)
        except RedisError as ex:
            logger.warning("delayed_task_drop_failed", queue=self.name, error=str(ex))

    # --- settlement ---

    async def mark_completed(self, task: Task) -> None:
        now = now_utc()
        task.processed_at = now
        await self._archive(self._keys.completed, task, now, self._cfg.completed_ttl_s)
        metrics.tasks_completed.labels(queue=self.name, type=task.type).inc()
        logger.info("task_completed", queue=self.name, task_id=task.id, task_type=task.type)

    async def mark_failed(self, task: Task, err: BaseException | str) -> bool:
        """
        Record a failed attempt. Returns True when the task became terminally failed.

        While `retries < max_retries` the task goes back to the delay set after
        `retries^2` backoff units (1, 4, 9, ...), so a task is re-enqueued exactly
        `max_retries` times before it lands in the failed archive.
        """
        now = now_utc()
        task.error = _error_text(err)
        task.processed_at = now

        if task.retries < task.max_retries:
            task.retries += 1
            delay = retry_delay(task.retries, self._cfg.backoff_unit_s)
            task.scheduled_at = now + delay
            task.processed_at = None
            await self._enqueue_delayed(task)
            metrics.tasks_retried.labels(queue=self.name, type=task.type).inc()
            logger.warning(
                "task_retry_scheduled",
                queue=self.name,
                task_id=task.id,
                task_type=task.type,
                retries=task.retries,
                max_retries=task.max_retries,
                delay_s=delay.total_seconds(),
                error=task.error,
            )
            return False

        await self._archive(self._keys.failed, task, now, self._cfg.failed_ttl_s)
        metrics.tasks_failed.labels(queue=self.name, type=task.type).inc()
        logger.error(
            "task_failed_permanently",
            queue=self.name,
            task_id=task.id,
            task_type=task.type,
            retries=task.retries,
            error=task.error,
        )
        return True

    async def _archive(self, key: str, task: Task, at: datetime, ttl_s: int) -> None:
        data = self._serialize(task)
        try:
            async with self._r.pipeline(transaction=True) as pipe:
                pipe.zadd(key, {data: float(at.timestamp())})
                pipe.expire(key, int(ttl_s))
                await pipe.execute()
        except RedisError as ex:
            logger.error(
                "task_archive_failed",
                queue=self.name,
                task_id=task.id,
                archive=key,
                error=str(ex),
            )
            raise QueueError(f"failed to archive task: {ex}") from ex

    # --- worker ---

    def start_worker(self, handlers: Mapping[object, TaskHandler] | None = None) -> None:
        """
        Start the sweep loop and the dispatch loop on the running event loop.

        Handlers run one at a time in the dispatch loop; throughput comes from running more
        queue instances against the same Redis.

        Starting again after `close()` left a handler running starts a fresh pair of loops;
        the new dispatch loop waits for the old one to settle its task before popping.
        """
        if self.is_running and not self._stopping:
            return
        draining = self._dispatch_task if self.is_running else None
        self._stopping = False
        self._generation += 1
        gen = self._generation
        self._handlers = HandlerRegistry(handlers)
        self._sweep_task = asyncio.create_task(
            self._sweep_loop(gen), name=f"queue.{self.name}.sweep"
        )
        self._dispatch_task = asyncio.create_task(
            self._dispatch_loop(gen, draining), name=f"queue.{self.name}.dispatch"
        )
        logger.info(
            "task_queue_worker_started",
            queue=self.name,
            handlers=self._handlers.types(),
            after_drain=draining is not None,
        )

    async def close(self, grace: float | None = None) -> None:
        """
        Stop both loops.

        Idle waits (the blocking pop, the sweep sleep) are cancelled immediately. An in-flight
        handler is not awaited by default; with `grace > 0` it gets that long to finish before
        being cancelled. The task it was running is settled either way.
        """
        self._stopping = True
        g = self._cfg.shutdown_grace_s if grace is None else max(0.0, float(grace))
        sweep, dispatch = self._sweep_task, self._dispatch_task

        if sweep is not None:
            sweep.cancel()
            await asyncio.gather(sweep, return_exceptions=True)
        if dispatch is not None and not dispatch.done():
            if self._inflight is None:
                dispatch.cancel()
                await asyncio.gather(dispatch, return_exceptions=True)
            elif g > 0:
                done, _ = await asyncio.wait({dispatch}, timeout=g)
                if not done:
                    dispatch.cancel()
                    await asyncio.gather(dispatch, return_exceptions=True)
            # else: the dispatch loop exits on its own once the handler returns.
        self._sweep_task = None
        logger.info("task_queue_stopped", queue=self.name)

    def _live(self, gen: int) -> bool:
        return not self._stopping and self._generation == gen

    async def _sweep_loop(self, gen: int) -> None:
        set_queue(self.name)
        while self._live(gen):
            try:
                await self.process_delayed_tasks()
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                logger.warning("delayed_sweep_failed", queue=self.name, error=str(ex))
            await asyncio.sleep(self._cfg.sweep_interval_s)

    async def _dispatch_loop(self, gen: int, draining: asyncio.Task | None = None) -> None:
        set_queue(self.name)
        if draining is not None:
            # One handler at a time per queue, across restarts too.
            await asyncio.gather(draining, return_exceptions=True)
        while self._live(gen):
            try:
                task = await self.dequeue(self._cfg.dequeue_timeout_s)
            except asyncio.CancelledError:
                raise
            except DequeueError:
                # Nothing was popped; back off briefly during a store outage.
                await asyncio.sleep(1.0)
                continue
            if task is None:
                continue
            self._inflight = task
            try:
                await self._run(task)
            finally:
                self._inflight = None
                set_task_id(None)
        logger.info("task_queue_worker_stopped", queue=self.name)

    async def _run(self, task: Task) -> None:
        set_task_id(task.id)
        handler = self._handlers.get(task.type)
        if handler is None:
            logger.error(
                "task_handler_missing", queue=self.name, task_id=task.id, task_type=task.type
            )
            await self._settle_failed(task, UnknownTaskTypeError(task.type))
            return

        logger.info("task_processing", queue=self.name, task_id=task.id, task_type=task.type)
        try:
            with metrics.time_hist(metrics.handler_seconds.labels(queue=self.name, type=task.type)):
                await handler(task)
        except asyncio.CancelledError:
            await self._settle_failed(task, QueueError("handler cancelled during shutdown"))
            raise
        except Exception as ex:
            logger.warning(
                "task_processing_failed",
                queue=self.name,
                task_id=task.id,
                task_type=task.type,
                error=_error_text(ex),
            )
            await self._settle_failed(task, ex)
            return
        await self._settle_completed(task)

    async def _settle_completed(self, task: Task) -> None:
        try:
            await self.mark_completed(task)
        except QueueError as ex:
            logger.error("task_settle_failed", queue=self.name, task_id=task.id, error=str(ex))

    async def _settle_failed(self, task: Task, err: BaseException) -> None:
        try:
            await self.mark_failed(task, err)
        except QueueError as ex:
            logger.error("task_settle_failed", queue=self.name, task_id=task.id, error=str(ex))

    # --- inspection / retention ---

    async def stats(self) -> QueueStats:
        try:
            async with self._r.pipeline(transaction=False) as pipe:
                for key in self._keys.bands_desc():
                    pipe.llen(key)
                pipe.zcard(self._keys.delayed)
                pipe.zcard(self._keys.completed)
                pipe.zcard(self._keys.failed)
                res = await pipe.execute()
        except RedisError as ex:
            raise QueueError(f"failed to read queue stats: {ex}") from ex
        bands = len(self._keys.bands_desc())
        return QueueStats(
            name=self.name,
            pending_tasks=sum(int(x or 0) for x in res[:bands]),
            delayed_tasks=int(res[bands] or 0),
            completed_tasks=int(res[bands + 1] or 0),
            failed_tasks=int(res[bands + 2] or 0),
        )

    async def purge_archives(self, now: datetime | None = None) -> dict[str, int]:
        """
        Drop archive entries past their TTL regardless of the key's own expiry.
        """
        ts = float((now or now_utc()).timestamp())
        try:
            removed_completed = await self._r.zremrangebyscore(
                self._keys.completed, "-inf", ts - self._cfg.completed_ttl_s
            )
            removed_failed = await self._r.zremrangebyscore(
                self._keys.failed, "-inf", ts - self._cfg.failed_ttl_s
            )
        except RedisError as ex:
            raise QueueError(f"failed to purge archives: {ex}") from ex
        return {"completed": int(removed_completed or 0), "failed": int(removed_failed or 0)}

    async def list_failed(self, limit: int = 50) -> list[Task]:
        return await self._list_archive(self._keys.failed, limit)

    async def list_completed(self, limit: int = 50) -> list[Task]:
        return await self._list_archive(self._keys.completed, limit)

    async def _list_archive(self, key: str, limit: int) -> list[Task]:
        lim = max(1, min(1000, int(limit)))
        try:
            items = await self._r.zrevrange(key, 0, lim - 1)
        except RedisError as ex:
            raise QueueError(f"failed to read archive: {ex}") from ex
        out: list[Task] = []
        for raw in items or []:
            try:
                out.append(Task.from_json(raw))
            except (ValueError, KeyError, TypeError):
                logger.warning("archive_entry_decode_failed", queue=self.name, archive=key)
        return out

    async def requeue_failed(self, task_id: str) -> Task | None:
        """
        Operator action: move a permanently failed task back to its ready band with a fresh
        retry budget. Returns the requeued task, or None if it is not in the failed archive.
        """
        tid = str(task_id or "").strip()
        try:
            members = await self._r.zrange(self._keys.failed, 0, -1)
        except RedisError as ex:
            raise QueueError(f"failed to read failed archive: {ex}") from ex
        for raw in members or []:
            try:
                task = Task.from_json(raw)
            except (ValueError, KeyError, TypeError):
                continue
            if task.id != tid:
                continue
            task.retries = 0
            task.error = ""
            task.scheduled_at = None
            task.processed_at = None
            try:
                ok = await self._requeue_script(
                    keys=[self._keys.failed, self._keys.band(task.priority)],
                    args=[raw, self._serialize(task)],
                )
            except RedisError as ex:
                raise QueueError(f"failed to requeue task: {ex}") from ex
            if int(ok or 0) != 1:
                return None
            logger.info("task_requeued", queue=self.name, task_id=task.id, task_type=task.type)
            return task
        return None
