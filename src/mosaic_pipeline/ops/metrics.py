from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress

from prometheus_client import CollectorRegistry, Counter, Histogram

REGISTRY = CollectorRegistry()

# Handler latency buckets (seconds); AI stylization and schema rendering can take minutes.
HANDLER_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0)

tasks_enqueued = Counter(
    "mosaic_tasks_enqueued_total",
    "Tasks accepted by a queue",
    labelnames=("queue", "type"),
    registry=REGISTRY,
)
tasks_completed = Counter(
    "mosaic_tasks_completed_total",
    "Tasks archived as completed",
    labelnames=("queue", "type"),
    registry=REGISTRY,
)
tasks_retried = Counter(
    "mosaic_tasks_retried_total",
    "Failed tasks rescheduled with backoff",
    labelnames=("queue", "type"),
    registry=REGISTRY,
)
tasks_failed = Counter(
    "mosaic_tasks_failed_total",
    "Tasks archived as permanently failed",
    labelnames=("queue", "type"),
    registry=REGISTRY,
)
delayed_moved = Counter(
    "mosaic_delayed_tasks_moved_total",
    "Delayed tasks moved into their ready band by the sweep",
    labelnames=("queue",),
    registry=REGISTRY,
)
handler_seconds = Histogram(
    "mosaic_task_handler_seconds",
    "Task handler latency (seconds)",
    labelnames=("queue", "type"),
    registry=REGISTRY,
    buckets=HANDLER_BUCKETS,
)


@contextmanager
def time_hist(h: Histogram) -> Iterator[None]:
    """Observe the wall time of the block into `h`, also when the block raises."""
    t0 = time.perf_counter()
    try:
        yield
    finally:
        with suppress(Exception):
            h.observe(max(0.0, time.perf_counter() - t0))
