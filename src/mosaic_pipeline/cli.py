from __future__ import annotations

import asyncio
import importlib
import json
import signal
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any, TypeVar

import click

from mosaic_pipeline import __version__
from mosaic_pipeline.config import get_safe_config_report, get_settings
from mosaic_pipeline.queue.adapters import EmailServiceAdapter, ImageServiceAdapter
from mosaic_pipeline.queue.errors import QueueError
from mosaic_pipeline.queue.manager import QueueManager
from mosaic_pipeline.queue.models import TaskOption, with_delay, with_max_retries, with_priority
from mosaic_pipeline.queue.store import build_redis_client
from mosaic_pipeline.utils.log import logger, set_log_level

T = TypeVar("T")


def _run(fn: Callable[[QueueManager], Awaitable[T]]) -> T:
    """Run one async operation against a short-lived manager and close its client."""

    async def _main() -> T:
        client = build_redis_client()
        mgr = QueueManager(client)
        try:
            return await fn(mgr)
        finally:
            with suppress(Exception):
                await client.aclose()

    try:
        return asyncio.run(_main())
    except QueueError as ex:
        raise click.ClickException(str(ex)) from ex


def _dump(obj: Any) -> str:
    return json.dumps(obj, indent=2, sort_keys=True)


def _load_services(target: str) -> tuple[Any, Any]:
    mod_name, sep, attr = str(target or "").partition(":")
    if not sep or not mod_name or not attr:
        raise click.BadParameter("expected 'module:callable'", param_hint="--services")
    try:
        factory = getattr(importlib.import_module(mod_name), attr)
    except (ImportError, AttributeError) as ex:
        raise click.BadParameter(f"cannot load {target}: {ex}", param_hint="--services") from ex
    out = factory()
    try:
        image_service, mailer = out
    except (TypeError, ValueError) as ex:
        raise click.BadParameter(
            f"{target} must return (image_service, mailer)", param_hint="--services"
        ) from ex
    return image_service, mailer


@click.group()
@click.version_option(__version__, prog_name="mosaic-queue")
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this run.")
def cli(log_level: str | None) -> None:
    """
    Operate the mosaic pipeline task queues.
    """
    if log_level:
        set_log_level(log_level)


@cli.command()
@click.option("--json", "json_flag", is_flag=True, default=False, help="Print JSON.")
@click.option(
    "--queue",
    "extra_queues",
    multiple=True,
    help="Also report this ad hoc queue (repeatable).",
)
def stats(json_flag: bool, extra_queues: tuple[str, ...]) -> None:
    """Show pending/delayed/completed/failed counts per queue."""

    async def _go(mgr: QueueManager):
        for name in extra_queues:
            mgr.create_queue(name)
        return await mgr.get_stats()

    res = _run(_go)
    if json_flag:
        click.echo(_dump({name: st.to_dict() for name, st in res.items()}))
        return
    for name, st in res.items():
        click.echo(
            f"{name}: pending={st.pending_tasks} delayed={st.delayed_tasks} "
            f"completed={st.completed_tasks} failed={st.failed_tasks}"
        )


@cli.command()
@click.argument("queue")
@click.argument("task_type")
@click.option("--payload", default="{}", show_default=True, help="Task payload as a JSON object.")
@click.option("--priority", type=click.IntRange(0, 10), default=None)
@click.option("--max-retries", type=click.IntRange(min=0), default=None)
@click.option("--delay", type=click.FloatRange(min=0.0), default=None, help="Seconds to defer.")
def enqueue(
    queue: str,
    task_type: str,
    payload: str,
    priority: int | None,
    max_retries: int | None,
    delay: float | None,
) -> None:
    """Enqueue a raw task of TASK_TYPE on QUEUE."""
    try:
        body = json.loads(payload)
    except json.JSONDecodeError as ex:
        raise click.BadParameter(f"not valid JSON: {ex}", param_hint="--payload") from ex
    if not isinstance(body, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--payload")

    opts: list[TaskOption] = []
    if priority is not None:
        opts.append(with_priority(priority))
    if max_retries is not None:
        opts.append(with_max_retries(max_retries))
    if delay:
        opts.append(with_delay(delay))

    async def _go(mgr: QueueManager):
        return await mgr.create_queue(queue).enqueue(task_type, body, *opts)

    task = _run(_go)
    click.echo(_dump(task.to_dict()))


@cli.command()
@click.argument("queue")
def sweep(queue: str) -> None:
    """Move due delayed tasks of QUEUE into their ready bands once."""

    async def _go(mgr: QueueManager):
        return await mgr.create_queue(queue).process_delayed_tasks()

    moved = _run(_go)
    click.echo(f"moved={moved}")


@cli.command()
@click.option(
    "--queue",
    "extra_queues",
    multiple=True,
    help="Also purge this ad hoc queue (repeatable).",
)
def cleanup(extra_queues: tuple[str, ...]) -> None:
    """Purge archive entries older than their retention window."""

    async def _go(mgr: QueueManager):
        for name in extra_queues:
            mgr.create_queue(name)
        return await mgr.cleanup_old_tasks()

    click.echo(_dump(_run(_go)))


@cli.command()
@click.argument("queue")
@click.argument("task_id")
def requeue(queue: str, task_id: str) -> None:
    """Move a permanently failed task back to its ready band with a fresh retry budget."""

    async def _go(mgr: QueueManager):
        return await mgr.create_queue(queue).requeue_failed(task_id)

    task = _run(_go)
    if task is None:
        raise click.ClickException(f"task {task_id} not found in {queue} failed archive")
    click.echo(_dump(task.to_dict()))


@cli.command(name="config")
def config_cmd() -> None:
    """Print the effective configuration (secrets shown as SET/UNSET)."""
    click.echo(_dump(get_safe_config_report()))


@cli.command()
@click.option(
    "--services",
    required=True,
    help="'module:callable' returning (image_service, mailer).",
)
@click.option(
    "--grace",
    type=click.FloatRange(min=0.0),
    default=None,
    help="Seconds to let an in-flight handler finish on shutdown.",
)
def worker(services: str, grace: float | None) -> None:
    """Run workers on the built-in queues until SIGINT/SIGTERM."""
    image_service, mailer = _load_services(services)

    async def _main() -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, stop.set)

        mgr = QueueManager()
        mgr.start_image_workers(ImageServiceAdapter(image_service), EmailServiceAdapter(mailer))
        logger.info("worker_running", queues=mgr.queue_names())
        try:
            await stop.wait()
        finally:
            logger.info("worker_stopping")
            await mgr.stop_all(grace)

    asyncio.run(_main())


@cli.command()
@click.option("--host", default=None, help="Bind host (default: HOST).")
@click.option("--port", type=int, default=None, help="Bind port (default: PORT).")
def serve(host: str | None, port: int | None) -> None:
    """Serve the read-only stats/health/metrics HTTP surface."""
    import uvicorn

    from mosaic_pipeline.server import create_app

    s = get_settings()
    uvicorn.run(
        create_app(),
        host=str(host or s.api_host),
        port=int(port or s.api_port),
        reload=False,
    )


if __name__ == "__main__":  # pragma: no cover
    cli()
