from __future__ import annotations

import asyncio
import uuid

import pytest

from mosaic_pipeline.queue.errors import EnqueueError
from mosaic_pipeline.queue.image_tasks import ImageTaskQueue, calculate_ai_priority
from mosaic_pipeline.queue.payloads import TaskType
from tests._helpers.redis import fake_client, fake_server, fast_config


def _queue() -> ImageTaskQueue:
    return ImageTaskQueue("images", fake_client(fake_server()), config=fast_config())


@pytest.mark.parametrize(
    ("style", "use_ai", "base", "params", "expected"),
    [
        ("pop_art", True, 2, {"lighting": "dramatic"}, 7),
        ("pop_art", True, 0, {}, 4),
        ("classic", True, 0, {}, 3),
        ("skin_tones", True, 5, {"lighting": "soft", "contrast": "high"}, 10),
        ("max_colors", True, 9, {"lighting": "x", "contrast": "y"}, 10),
        ("classic", True, 0, {"lighting": "", "contrast": 3}, 3),
        ("classic", True, -10, {}, 1),
        ("pop_art", False, 2, {"lighting": "dramatic"}, 2),
    ],
)
def test_calculate_ai_priority(style, use_ai, base, params, expected) -> None:
    assert calculate_ai_priority(style, use_ai, base, params) == expected


def test_helper_priorities_and_retry_budgets() -> None:
    async def main() -> None:
        q = _queue()
        img = uuid.uuid4()
        t = await q.enqueue_image_processing(img, "grayscale", {"contrast": "high"})
        assert (t.type, t.priority, t.max_retries) == ("image_processing", 5, 3)
        assert t.payload["image_id"] == str(img)

        t = await q.enqueue_schema_generation(img, None, True)
        assert (t.type, t.priority, t.max_retries) == ("schema_generation", 8, 2)

        t = await q.enqueue_email_sending("u@example.com", "https://s/x.pdf", "CODE1")
        assert (t.type, t.priority, t.max_retries) == ("email_sending", 3, 5)

        t = await q.enqueue_image_optimization(img, 70)
        assert (t.type, t.priority) == ("image_optimization", 2)
        assert t.payload["quality"] == 70

        t = await q.enqueue_thumbnail_generation(img, ["64x64", "256x256"])
        assert (t.type, t.priority) == ("thumbnail_generation", 1)

        st = await q.stats()
        assert st.pending_tasks == 5

    asyncio.run(main())


def test_ai_processing_priority_and_floor() -> None:
    async def main() -> None:
        q = _queue()
        img = uuid.uuid4()
        t = await q.enqueue_ai_processing(
            img, "u@example.com", "pop_art", True, {"lighting": "dramatic"}, priority=2
        )
        assert t.type == TaskType.AI_PROCESSING.value
        assert t.priority == 7
        assert t.max_retries == 3
        assert await q._r.llen(q.keys.band(7)) == 1

        # Below the floor is lifted to 6, with or without AI.
        t = await q.enqueue_ai_processing(img, "u@example.com", "classic", False, {}, priority=1)
        assert t.priority == 6
        t = await q.enqueue_ai_processing(img, "u@example.com", "classic", True, {}, priority=0)
        assert t.priority == 6

    asyncio.run(main())


def test_priority_ai_processing_goes_to_top_band() -> None:
    async def main() -> None:
        q = _queue()
        await q.enqueue_image_processing(uuid.uuid4(), "classic")
        t = await q.enqueue_priority_ai_processing(uuid.uuid4(), "u@example.com", "pop_art", True)
        assert t.type == "ai_priority"
        assert t.priority == 10
        got = await q.dequeue(0)
        assert got.id == t.id

    asyncio.run(main())


def test_invalid_helper_arguments_raise_enqueue_error() -> None:
    async def main() -> None:
        q = _queue()
        with pytest.raises(EnqueueError):
            await q.enqueue_email_sending("nobody", "https://s/x.pdf", "C")
        with pytest.raises(EnqueueError):
            await q.enqueue_image_optimization(uuid.uuid4(), 0)
        assert (await q.stats()).pending_tasks == 0

    asyncio.run(main())
