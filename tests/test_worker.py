from __future__ import annotations

import asyncio

from mosaic_pipeline.queue.models import Task, with_max_retries, with_priority
from mosaic_pipeline.queue.redis_queue import TaskQueue
from tests._helpers.redis import fake_client, fake_server, fast_config, wait_for


def test_worker_runs_handlers_in_priority_order() -> None:
    async def main() -> None:
        q = TaskQueue("w", fake_client(fake_server()), config=fast_config())
        seen: list[int] = []

        async def handle(task: Task) -> None:
            seen.append(task.priority)

        for p in (1, 9, 4):
            await q.enqueue("resize", {}, with_priority(p))
        q.start_worker({"resize": handle})
        assert q.is_running

        async def done() -> bool:
            return (await q.stats()).completed_tasks == 3

        assert await wait_for(done)
        await q.close()
        assert not q.is_running
        assert seen == [9, 4, 1]

    asyncio.run(main())


def test_start_worker_is_idempotent() -> None:
    async def main() -> None:
        q = TaskQueue("w", fake_client(fake_server()), config=fast_config())
        q.start_worker({})
        first = q._dispatch_task
        q.start_worker({})
        assert q._dispatch_task is first
        await q.close()

    asyncio.run(main())


def test_unknown_task_type_is_retried_then_failed() -> None:
    async def main() -> None:
        q = TaskQueue("w", fake_client(fake_server()), config=fast_config(backoff_unit_s=0.0))

        async def handle(task: Task) -> None:
            raise AssertionError("not reached")

        await q.enqueue("mystery", {}, with_max_retries(1))
        q.start_worker({"known": handle})

        async def failed() -> bool:
            return (await q.stats()).failed_tasks == 1

        assert await wait_for(failed)
        await q.close()

        [t] = await q.list_failed()
        assert t.type == "mystery"
        assert t.retries == 1
        assert t.error == "no handler found for task type: mystery"

    asyncio.run(main())


def test_handler_error_text_is_recorded() -> None:
    async def main() -> None:
        client = fake_client(fake_server())
        q = TaskQueue("w", client, config=fast_config())

        async def handle(task: Task) -> None:
            raise RuntimeError("render farm offline")

        await q.enqueue("render", {}, with_max_retries(2))
        q.start_worker({"render": handle})

        async def delayed() -> bool:
            return (await q.stats()).delayed_tasks == 1

        assert await wait_for(delayed)
        await q.close()

        st = await q.stats()
        assert st.failed_tasks == 0
        assert st.pending_tasks == 0
        [raw] = await client.zrange(q.keys.delayed, 0, -1)
        t = Task.from_json(raw)
        assert t.retries == 1
        assert t.error == "render farm offline"

    asyncio.run(main())


def test_close_with_grace_lets_handler_finish() -> None:
    async def main() -> None:
        q = TaskQueue("w", fake_client(fake_server()), config=fast_config())
        started = asyncio.Event()

        async def handle(task: Task) -> None:
            started.set()
            await asyncio.sleep(0.1)

        await q.enqueue("slow", {})
        q.start_worker({"slow": handle})
        await asyncio.wait_for(started.wait(), timeout=5)
        await q.close(grace=5)

        st = await q.stats()
        assert st.completed_tasks == 1
        assert st.failed_tasks == 0

    asyncio.run(main())


def test_close_cancels_handler_after_grace() -> None:
    async def main() -> None:
        q = TaskQueue("w", fake_client(fake_server()), config=fast_config())
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def handle(task: Task) -> None:
            started.set()
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        await q.enqueue("stuck", {}, with_max_retries(0))
        q.start_worker({"stuck": handle})
        await asyncio.wait_for(started.wait(), timeout=5)
        await q.close(grace=0.05)

        assert cancelled.is_set()
        [t] = await q.list_failed()
        assert t.error == "handler cancelled during shutdown"

    asyncio.run(main())


def test_close_without_grace_does_not_wait_for_handler() -> None:
    async def main() -> None:
        q = TaskQueue("w", fake_client(fake_server()), config=fast_config())
        started = asyncio.Event()
        release = asyncio.Event()

        async def handle(task: Task) -> None:
            started.set()
            await release.wait()

        await q.enqueue("bg", {})
        q.start_worker({"bg": handle})
        await asyncio.wait_for(started.wait(), timeout=5)
        await q.close(grace=0)
        assert q.inflight is not None

        # The handler still settles once it returns.
        release.set()

        async def stopped() -> bool:
            return not q.is_running

        assert await wait_for(stopped)
        assert (await q.stats()).completed_tasks == 1

    asyncio.run(main())


def test_restart_after_close_without_grace_keeps_consuming() -> None:
    async def main() -> None:
        q = TaskQueue("w", fake_client(fake_server()), config=fast_config())
        started = asyncio.Event()
        release = asyncio.Event()
        seen: list[str] = []

        async def handle(task: Task) -> None:
            seen.append(task.id)
            started.set()
            await release.wait()

        first = await q.enqueue("bg", {})
        q.start_worker({"bg": handle})
        await asyncio.wait_for(started.wait(), timeout=5)
        old = q._dispatch_task

        await q.close(grace=0)
        q.start_worker({"bg": handle})
        assert q._dispatch_task is not old
        assert q.is_running

        release.set()
        second = await q.enqueue("bg", {})

        async def both_done() -> bool:
            return (await q.stats()).completed_tasks == 2

        assert await wait_for(both_done)
        assert old.done()
        await q.close()
        assert seen == [first.id, second.id]
        assert (await q.stats()).pending_tasks == 0

    asyncio.run(main())
