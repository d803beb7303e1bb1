"""In-process delivery queue: dedupe, re-scheduling and worker isolation."""
import asyncio

import pytest

from alertrelay.services.delivery_queue import DeliveryQueue


class ScriptedHandler:
    """Returns queued delays per delivery id; records calls and overlap."""

    def __init__(self, script=None, pause=0.0):
        self.script = {key: list(value) for key, value in (script or {}).items()}
        self.pause = pause
        self.calls: list[str] = []
        self.in_flight: set[str] = set()
        self.overlapped = False

    async def __call__(self, delivery_id):
        if delivery_id in self.in_flight:
            self.overlapped = True
        self.in_flight.add(delivery_id)
        self.calls.append(delivery_id)
        try:
            await asyncio.sleep(self.pause)
            steps = self.script.get(delivery_id)
            if not steps:
                return None
            step = steps.pop(0)
            if isinstance(step, Exception):
                raise step
            return step
        finally:
            self.in_flight.discard(delivery_id)


@pytest.mark.asyncio
async def test_handler_is_reinvoked_until_terminal():
    handler = ScriptedHandler({"d1": [0.0, 0.01, None]})
    queue = DeliveryQueue(handler, worker_count=2)
    await queue.start()
    try:
        await queue.enqueue("d1")
        await queue.drain(timeout=2)
    finally:
        await queue.stop()

    assert handler.calls == ["d1", "d1", "d1"]
    assert not queue.owns("d1")


@pytest.mark.asyncio
async def test_duplicate_enqueue_is_ignored_while_owned():
    handler = ScriptedHandler(pause=0.05)
    queue = DeliveryQueue(handler, worker_count=3)
    await queue.start()
    try:
        assert await queue.enqueue("d1")
        assert not await queue.enqueue("d1")
        await queue.drain(timeout=2)
        # once terminal, the id can be queued again
        assert await queue.enqueue("d1")
        await queue.drain(timeout=2)
    finally:
        await queue.stop()

    assert handler.calls == ["d1", "d1"]


@pytest.mark.asyncio
async def test_attempts_for_one_delivery_never_overlap():
    handler = ScriptedHandler({"d1": [0.0, 0.0, 0.0]}, pause=0.02)
    queue = DeliveryQueue(handler, worker_count=4)
    await queue.start()
    try:
        for _ in range(5):
            await queue.enqueue("d1")
        await queue.drain(timeout=2)
    finally:
        await queue.stop()

    assert not handler.overlapped
    assert len(handler.calls) == 4


@pytest.mark.asyncio
async def test_crashing_handler_does_not_stop_workers():
    handler = ScriptedHandler({"bad": [RuntimeError("boom")]})
    queue = DeliveryQueue(handler, worker_count=1)
    await queue.start()
    try:
        await queue.enqueue("bad")
        await queue.enqueue("good")
        await queue.drain(timeout=2)
    finally:
        await queue.stop()

    assert handler.calls == ["bad", "good"]
    assert not queue.owns("bad")


@pytest.mark.asyncio
async def test_deliveries_run_concurrently_across_workers():
    handler = ScriptedHandler(pause=0.1)
    queue = DeliveryQueue(handler, worker_count=5)
    await queue.start()
    try:
        loop = asyncio.get_running_loop()
        started = loop.time()
        for index in range(5):
            await queue.enqueue(f"d{index}")
        await queue.drain(timeout=2)
        elapsed = loop.time() - started
    finally:
        await queue.stop()

    assert sorted(handler.calls) == [f"d{index}" for index in range(5)]
    assert elapsed < 0.4


@pytest.mark.asyncio
async def test_enqueue_requires_running_queue():
    queue = DeliveryQueue(ScriptedHandler())
    with pytest.raises(RuntimeError):
        await queue.enqueue("d1")


@pytest.mark.asyncio
async def test_stop_drops_delayed_work():
    handler = ScriptedHandler({"d1": [60.0]})
    queue = DeliveryQueue(handler, worker_count=1)
    await queue.start()
    await queue.enqueue("d1")
    while not handler.calls:
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.01)

    await queue.stop()

    assert handler.calls == ["d1"]
    assert not queue.owns("d1")
    assert not queue.running
