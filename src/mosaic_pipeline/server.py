from __future__ import annotations

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis.exceptions import RedisError

from mosaic_pipeline import __version__
from mosaic_pipeline.api.routes_queue import router as queue_router
from mosaic_pipeline.ops.metrics import REGISTRY
from mosaic_pipeline.queue.manager import QueueManager
from mosaic_pipeline.utils.log import logger


def create_app(manager: QueueManager | None = None) -> FastAPI:
    """
    Read-only HTTP surface over the queues: stats, failed archive, liveness and metrics.

    A manager passed in is owned by the caller (and is not stopped on shutdown); without
    one the app builds its own from settings and stops it when the lifespan ends.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "queue_manager", None) is None:
            owned = QueueManager()
            app.state.queue_manager = owned
        yield
        if owned is not None:
            await owned.stop_all()

    app = FastAPI(title="mosaic queue", version=__version__, lifespan=lifespan)
    if manager is not None:
        app.state.queue_manager = manager
    app.include_router(queue_router)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        t0 = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
        finally:
            logger.info(
                "http_done",
                method=request.method,
                path=request.url.path,
                status=getattr(response, "status_code", 0),
                duration_ms=(time.perf_counter() - t0) * 1000.0,
            )
        return response

    @app.get("/healthz")
    async def healthz():
        # Liveness: process is up.
        return {"ok": True}

    @app.get("/readyz")
    async def readyz(request: Request):
        mgr = getattr(request.app.state, "queue_manager", None)
        if mgr is None:
            raise HTTPException(status_code=503, detail="not ready: missing queue manager")
        try:
            await mgr.client.ping()
        except RedisError as ex:
            raise HTTPException(status_code=503, detail=f"not ready: {ex}") from ex
        return {"ok": True}

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    return app
