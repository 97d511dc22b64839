from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request

from mosaic_pipeline.queue.errors import QueueError
from mosaic_pipeline.queue.manager import QueueManager
from mosaic_pipeline.queue.redis_queue import TaskQueue
from mosaic_pipeline.utils.log import logger

router = APIRouter(prefix="/api/queue", tags=["queue"])


def _manager(request: Request) -> QueueManager:
    mgr = getattr(request.app.state, "queue_manager", None)
    if mgr is None:
        raise HTTPException(status_code=503, detail="queue manager not initialized")
    return mgr


def _queue(request: Request, name: str) -> TaskQueue:
    q = _manager(request).get_queue(name)
    if q is None:
        raise HTTPException(status_code=404, detail=f"queue not found: {name}")
    return q


@router.get("/stats")
async def all_stats(request: Request) -> dict[str, Any]:
    stats = await _manager(request).get_stats()
    return {"queues": {name: st.to_dict() for name, st in stats.items()}}


@router.get("/stats/{name}")
async def queue_stats(request: Request, name: str) -> dict[str, Any]:
    q = _queue(request, name)
    try:
        st = await q.stats()
    except QueueError as ex:
        logger.warning("queue_stats_failed", queue=name, error=str(ex))
        raise HTTPException(status_code=503, detail=f"queue store unavailable: {ex}") from ex
    return st.to_dict()


@router.get("/failed/{name}")
async def failed_tasks(
    request: Request, name: str, limit: int = Query(default=50, ge=1, le=1000)
) -> dict[str, Any]:
    q = _queue(request, name)
    try:
        tasks = await q.list_failed(limit=limit)
    except QueueError as ex:
        raise HTTPException(status_code=503, detail=f"queue store unavailable: {ex}") from ex
    return {"queue": name, "tasks": [t.to_dict() for t in tasks]}
