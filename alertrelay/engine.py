"""
Engine wiring.

Builds the long-lived collaborators (HTTP client, ephemeral stores,
delivery queue, matcher, dispatcher, pipeline) once per process and
shares them between the API and the worker.
"""
import asyncio
from dataclasses import dataclass, field

import httpx
import structlog

from alertrelay.config import settings as default_settings
from alertrelay.models.base import utcnow
from alertrelay.sentry_config import capture_exception
from alertrelay.services.action_dispatcher import ActionDispatcher
from alertrelay.services.channels import ChannelNotifier
from alertrelay.services.delivery_queue import ArqDeliveryQueue, DeliveryQueue
from alertrelay.services.ephemeral_store import build_ephemeral_stores
from alertrelay.services.event_pipeline import EventPipeline
from alertrelay.services.rule_matcher import RuleMatcher
from alertrelay.services.secret_box import SecretBox
from alertrelay.services.webhook_service import WebhookDeliveryService

logger = structlog.get_logger()


@dataclass
class Engine:
    settings: object
    session_factory: object
    http_client: httpx.AsyncClient
    secret_box: SecretBox
    counter: object
    ledger: object
    deliveries: WebhookDeliveryService
    queue: object
    matcher: RuleMatcher
    dispatcher: ActionDispatcher
    pipeline: EventPipeline
    _maintenance_task: asyncio.Task | None = field(default=None, repr=False)

    async def start(self, run_maintenance_loop: bool = True) -> None:
        """Start the delivery queue and pick up deliveries left over from a previous run."""
        await self.queue.start()
        await self.recover_due_deliveries()
        if run_maintenance_loop and self.settings.MAINTENANCE_INTERVAL_SECONDS > 0:
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        logger.info("engine_started", delivery_backend=self.settings.DELIVERY_BACKEND)

    async def stop(self) -> None:
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None
        await self.queue.stop()
        await self.http_client.aclose()
        logger.info("engine_stopped")

    async def recover_due_deliveries(self) -> int:
        """Enqueue non-terminal deliveries that are due. Returns how many were newly queued."""
        due = await self.deliveries.due_deliveries(utcnow(), limit=self.settings.WEBHOOK_RECOVERY_BATCH_SIZE)
        queued = 0
        for delivery_id in due:
            if await self.queue.enqueue(delivery_id):
                queued += 1
        if queued:
            logger.info("deliveries_recovered", count=queued)
        return queued

    async def run_maintenance(self) -> None:
        """Delivery recovery plus ephemeral store hygiene."""
        await self.recover_due_deliveries()
        now = utcnow()
        swept_counters = await self.counter.sweep(now)
        swept_suppressions = await self.ledger.sweep(now)
        if swept_counters or swept_suppressions:
            logger.debug("ephemeral_store_swept", counters=swept_counters, suppressions=swept_suppressions)

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.MAINTENANCE_INTERVAL_SECONDS)
            try:
                await self.run_maintenance()
            except Exception:
                logger.exception("maintenance_failed")
                capture_exception()


def build_engine(
    settings=None,
    session_factory=None,
    transport: httpx.AsyncBaseTransport | None = None,
    secret_box: SecretBox | None = None,
    queue=None,
) -> Engine:
    """
    Assemble an Engine from settings.

    Args:
        settings: Settings instance (defaults to alertrelay.config.settings)
        session_factory: async_sessionmaker (defaults to AsyncSessionLocal)
        transport: optional httpx transport, used by tests
        secret_box: optional pre-built SecretBox
        queue: optional delivery queue overriding DELIVERY_BACKEND
    """
    settings = settings or default_settings
    if session_factory is None:
        from alertrelay.database import AsyncSessionLocal
        session_factory = AsyncSessionLocal

    http_client = httpx.AsyncClient(transport=transport, follow_redirects=False)
    secret_box = secret_box or SecretBox.from_settings(settings)
    counter, ledger = build_ephemeral_stores(settings)

    deliveries = WebhookDeliveryService(session_factory, secret_box, http_client, settings)
    if queue is None:
        if settings.DELIVERY_BACKEND == "arq":
            queue = ArqDeliveryQueue.from_url(settings.REDIS_URL)
        else:
            queue = DeliveryQueue(deliveries.attempt, worker_count=settings.WEBHOOK_WORKER_COUNT)

    matcher = RuleMatcher(counter, ledger)
    dispatcher = ActionDispatcher(
        session_factory,
        ChannelNotifier(http_client, settings),
        ledger,
        deliveries,
        queue,
        secret_box,
    )
    pipeline = EventPipeline(session_factory, matcher, dispatcher)

    return Engine(
        settings=settings,
        session_factory=session_factory,
        http_client=http_client,
        secret_box=secret_box,
        counter=counter,
        ledger=ledger,
        deliveries=deliveries,
        queue=queue,
        matcher=matcher,
        dispatcher=dispatcher,
        pipeline=pipeline,
    )


_engine: Engine | None = None


def set_engine(engine: Engine | None) -> None:
    global _engine
    _engine = engine


def get_engine() -> Engine:
    """FastAPI dependency returning the process-wide engine."""
    if _engine is None:
        raise RuntimeError("engine has not been started")
    return _engine
