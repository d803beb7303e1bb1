"""
ARQ Background Worker for AlertRelay.

Runs webhook delivery attempts from Redis when DELIVERY_BACKEND=arq.
Each job performs one attempt; a retryable failure re-queues the same job
with arq's Retry after the backoff delay, so a delivery never has two
attempts running at once.

Run with: arq alertrelay.worker.WorkerSettings
"""
import asyncio

from arq import Retry, cron
from arq.connections import RedisSettings

from alertrelay.config import settings
from alertrelay.engine import build_engine
from alertrelay.logging_config import configure_logging, get_logger
from alertrelay.sentry_config import configure_sentry
from alertrelay.services.delivery_queue import ArqDeliveryQueue

logger = get_logger(component="worker")


async def startup(ctx: dict) -> None:
    configure_logging()
    configure_sentry()
    engine = build_engine(settings, queue=ArqDeliveryQueue.from_url(settings.REDIS_URL))
    await engine.queue.start()
    ctx["engine"] = engine
    logger.info("worker_started", redis=settings.REDIS_URL, max_jobs=settings.WEBHOOK_WORKER_COUNT)


async def shutdown(ctx: dict) -> None:
    engine = ctx.get("engine")
    if engine is not None:
        await engine.stop()
    logger.info("worker_stopped")


async def deliver_webhook(ctx: dict, delivery_id: str) -> dict:
    """Run one delivery attempt; raise Retry to schedule the next one."""
    engine = ctx["engine"]
    job_try = ctx.get("job_try", 1)
    logger.info("delivery_job_started", delivery_id=delivery_id, job_try=job_try)

    delay = await engine.deliveries.attempt(delivery_id)
    if delay is not None:
        # Use ARQ's Retry with the delivery's backoff delay
        raise Retry(defer=delay)
    return {"delivery_id": delivery_id, "status": "done"}


async def recover_deliveries(ctx: dict) -> int:
    """Periodic sweep: re-queue due deliveries and expire ephemeral state."""
    engine = ctx["engine"]
    await engine.run_maintenance()
    return 0


# Register functions for ARQ
ARQ_FUNCTIONS = [
    deliver_webhook,
]


async def main():
    """Run the worker using arq cli."""
    print("Use: arq alertrelay.worker.WorkerSettings")
    print(f"Redis: {settings.REDIS_URL}")


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq alertrelay.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    functions = ARQ_FUNCTIONS
    cron_jobs = [cron(recover_deliveries, second={0}, run_at_startup=True)]
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = settings.WEBHOOK_WORKER_COUNT
    # One try per attempt; up to 11 attempts (retry_count 10) plus headroom
    max_tries = 12
    job_timeout = 130
    keep_result = 0


if __name__ == "__main__":
    asyncio.run(main())
