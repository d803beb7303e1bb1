"""
Delivery queues for webhook attempts.

DeliveryQueue runs attempts in-process on a bounded pool of asyncio
workers. A delivery whose attempt asks for a retry is re-enqueued by a
timer after the backoff delay, and only once its outcome is recorded, so
each delivery has at most one attempt in flight.

ArqDeliveryQueue hands the same work to arq workers through Redis for
multi-process deployments (see alertrelay.worker).
"""
import asyncio
from typing import Awaitable, Callable

import structlog
from arq import create_pool
from arq.connections import RedisSettings

from alertrelay.sentry_config import capture_exception

logger = structlog.get_logger()

DeliveryHandler = Callable[[str], Awaitable[float | None]]


class DeliveryQueue:
    """
    In-process worker pool consuming delivery ids.

    Enqueueing an id that is already owned (queued, waiting on a backoff
    timer or in flight) is a no-op.
    """

    def __init__(self, handler: DeliveryHandler, worker_count: int = 5):
        self.handler = handler
        self.worker_count = worker_count
        self._queue: asyncio.Queue | None = None
        self._workers: list[asyncio.Task] = []
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._owned: set[str] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def owns(self, delivery_id: str) -> bool:
        return delivery_id in self._owned

    async def start(self) -> None:
        if self._running:
            return
        self._queue = asyncio.Queue()
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"webhook-delivery-{index}")
            for index in range(self.worker_count)
        ]
        logger.info("delivery_queue_started", workers=self.worker_count)

    async def stop(self) -> None:
        """
        Stop accepting work. Attempts already sending finish and are
        recorded; queued and delayed ids stay pending in the database
        for recovery.
        """
        if not self._running:
            return
        self._running = False
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for _ in self._workers:
            self._queue.put_nowait(None)
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._owned.clear()
        logger.info("delivery_queue_stopped")

    async def enqueue(self, delivery_id: str, delay: float = 0.0) -> bool:
        """Queue a delivery for an attempt after `delay` seconds."""
        if not self._running:
            raise RuntimeError("delivery queue is not running")
        if delivery_id in self._owned:
            return False
        self._owned.add(delivery_id)
        self._schedule(delivery_id, delay)
        return True

    def _schedule(self, delivery_id: str, delay: float) -> None:
        if delay <= 0:
            self._queue.put_nowait(delivery_id)
            return
        loop = asyncio.get_running_loop()
        self._timers[delivery_id] = loop.call_later(delay, self._fire, delivery_id)

    def _fire(self, delivery_id: str) -> None:
        self._timers.pop(delivery_id, None)
        if self._running:
            self._queue.put_nowait(delivery_id)

    async def _worker(self, index: int) -> None:
        while True:
            delivery_id = await self._queue.get()
            if delivery_id is None:
                self._queue.task_done()
                return
            if not self._running:
                self._owned.discard(delivery_id)
                self._queue.task_done()
                continue

            delay = None
            try:
                delay = await self.handler(delivery_id)
            except Exception:
                logger.exception("delivery_attempt_crashed", delivery_id=delivery_id, worker=index)
                capture_exception()

            if delay is not None and self._running:
                self._schedule(delivery_id, delay)
            else:
                self._owned.discard(delivery_id)
            self._queue.task_done()

    async def drain(self, timeout: float | None = None) -> None:
        """Wait until no delivery is queued, delayed or in flight."""
        async def _idle():
            while self._owned:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_idle(), timeout=timeout)


class ArqDeliveryQueue:
    """Enqueues deliver_webhook jobs into arq, keyed by delivery id."""

    def __init__(self, redis_settings: RedisSettings):
        self.redis_settings = redis_settings
        self._pool = None

    @classmethod
    def from_url(cls, redis_url: str) -> "ArqDeliveryQueue":
        return cls(RedisSettings.from_dsn(redis_url))

    async def start(self) -> None:
        if self._pool is None:
            self._pool = await create_pool(self.redis_settings)
            logger.info("arq_delivery_queue_started")

    async def stop(self) -> None:
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None

    async def enqueue(self, delivery_id: str, delay: float = 0.0) -> bool:
        # One job id per delivery; arq ignores duplicates while the job exists.
        job = await self._pool.enqueue_job(
            "deliver_webhook",
            delivery_id,
            _job_id=f"webhook-delivery:{delivery_id}",
            _defer_by=delay if delay > 0 else None,
        )
        if job is None:
            logger.debug("delivery_already_queued", delivery_id=delivery_id)
        return job is not None
