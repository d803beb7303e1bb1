"""
Shared fixtures.

Durable state lives in a throwaway SQLite file per test; outbound HTTP
goes through httpx.MockTransport so every request can be inspected.
"""
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from alertrelay.config import Settings, settings as app_settings
from alertrelay.engine import build_engine
from alertrelay.models.base import Base
from alertrelay.models import channel, notification_rule, webhook  # noqa: F401  register tables
from alertrelay.models.enums import TriggerType
from alertrelay.schemas.events import SignalEvent
from alertrelay.services.secret_box import SecretBox

ORG_ID = "org-1"
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class Recorder:
    """MockTransport handler that records requests and replies via `responder`."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.responder = lambda request: httpx.Response(200, json={"ok": True})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    def to(self, url_prefix: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url).startswith(url_prefix)]


def make_event(**overrides) -> SignalEvent:
    fields = {
        "org_id": ORG_ID,
        "trigger_type": TriggerType.BACKUP_FAILED,
        "severity": "critical",
        "resource_type": "agent",
        "resource_id": "agent-a",
        "occurred_at": T0,
    }
    fields.update(overrides)
    return SignalEvent(**fields)


@pytest.fixture
def settings():
    return Settings(
        DATABASE_URL="sqlite+aiosqlite://",
        EPHEMERAL_BACKEND="memory",
        DELIVERY_BACKEND="inline",
        WEBHOOK_BACKOFF_BASE_SECONDS=0,
        WEBHOOK_BACKOFF_CAP_SECONDS=0,
        WEBHOOK_WORKER_COUNT=3,
        MAINTENANCE_INTERVAL_SECONDS=0,
        ADHOC_WEBHOOK_SECRET="adhoc-signing-secret",
        SENTRY_DSN=None,
    )


@pytest.fixture
def secret_box():
    return SecretBox(SecretBox.generate_key())


@pytest.fixture
def recorder():
    return Recorder()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'alertrelay.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    await db_engine.dispose()


@pytest_asyncio.fixture
async def engine(settings, session_factory, recorder, secret_box):
    eng = build_engine(
        settings,
        session_factory=session_factory,
        transport=httpx.MockTransport(recorder),
        secret_box=secret_box,
    )
    await eng.start(run_maintenance_loop=False)
    yield eng
    await eng.stop()


def make_token(org_id: str | None = ORG_ID, expires_in: timedelta = timedelta(minutes=30), **claims) -> str:
    """Bearer token signed the way the identity service signs them."""
    payload = {"sub": "user-1", "exp": datetime.now(timezone.utc) + expires_in, **claims}
    if org_id is not None:
        payload["org_id"] = org_id
    return jwt.encode(payload, app_settings.JWT_SECRET_KEY, algorithm=app_settings.JWT_ALGORITHM)
