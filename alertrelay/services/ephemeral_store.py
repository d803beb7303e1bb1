"""
Ephemeral evaluation state: rolling event counters and the suppression ledger.

Both live outside the durable store. Losing them risks at most one missed
or duplicated trigger, so they are kept in process memory by default or in
Redis when several processes evaluate events (EPHEMERAL_BACKEND=redis).

Every counter mutation (append, prune, threshold check, reset) is a single
atomic operation per (rule_id, scope_key): an asyncio.Lock per key in
memory, a Lua script in Redis.
"""
import asyncio
import bisect
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import redis.asyncio as redis
import structlog

logger = structlog.get_logger()

COUNTER_PREFIX = "alertrelay:counter"
SUPPRESS_PREFIX = "alertrelay:suppress"


@dataclass(frozen=True)
class CounterHit:
    """Outcome of appending one event to a rolling counter."""
    count: int
    triggered: bool


@dataclass
class _Window:
    timestamps: list[float] = field(default_factory=list)
    window_seconds: float = 0.0


class MemoryRollingCounter:
    """Per-(rule, scope) sorted timestamp windows held in process memory."""

    def __init__(self):
        self._windows: dict[tuple[str, str], _Window] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _lock_for(self, key: tuple[str, str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def hit(
        self,
        rule_id: str,
        scope_key: str,
        at: datetime,
        window: timedelta,
        threshold: int,
    ) -> CounterHit:
        """
        Record an event at `at` and check the threshold.

        The window always ends at the newest recorded event, so a late
        event only counts if it falls inside it. Reaching the threshold
        clears the key so the same burst cannot fire twice.
        """
        key = (rule_id, scope_key)
        async with self._lock_for(key):
            entry = self._windows.setdefault(key, _Window())
            entry.window_seconds = window.total_seconds()

            bisect.insort(entry.timestamps, at.timestamp())

            cutoff = entry.timestamps[-1] - entry.window_seconds
            drop = bisect.bisect_left(entry.timestamps, cutoff)
            if drop:
                del entry.timestamps[:drop]

            count = len(entry.timestamps)
            if count >= threshold:
                del self._windows[key]
                return CounterHit(count=count, triggered=True)
            return CounterHit(count=count, triggered=False)

    async def count(self, rule_id: str, scope_key: str) -> int:
        entry = self._windows.get((rule_id, scope_key))
        return len(entry.timestamps) if entry else 0

    async def reset(self, rule_id: str, scope_key: str | None = None) -> None:
        """Forget one scope of a rule, or every scope when scope_key is None."""
        if scope_key is not None:
            self._windows.pop((rule_id, scope_key), None)
            return
        for key in [k for k in self._windows if k[0] == rule_id]:
            del self._windows[key]

    async def sweep(self, now: datetime) -> int:
        """Drop windows whose newest entry has aged out. Returns keys removed."""
        ts = now.timestamp()
        stale = [
            key for key, entry in self._windows.items()
            if not entry.timestamps or entry.timestamps[-1] < ts - entry.window_seconds
        ]
        for key in stale:
            del self._windows[key]
            lock = self._locks.get(key)
            if lock is not None and not lock.locked():
                del self._locks[key]
        return len(stale)


class MemorySuppressionLedger:
    """(rule_id, scope_key) -> expires_at, expired lazily on read."""

    def __init__(self):
        self._entries: dict[tuple[str, str], datetime] = {}

    async def suppress(self, rule_id: str, scope_key: str, until: datetime) -> None:
        # Overwrites: re-suppressing moves the expiry, it never stacks.
        self._entries[(rule_id, scope_key)] = until

    async def is_suppressed(self, rule_id: str, scope_key: str, now: datetime) -> bool:
        key = (rule_id, scope_key)
        expires_at = self._entries.get(key)
        if expires_at is None:
            return False
        if now > expires_at:
            self._entries.pop(key, None)
            return False
        return True

    async def clear(self, rule_id: str) -> None:
        for key in [k for k in self._entries if k[0] == rule_id]:
            del self._entries[key]

    async def sweep(self, now: datetime) -> int:
        expired = [key for key, expires_at in self._entries.items() if now > expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)


# ZADD, prune, count and conditional reset in one round trip.
_HIT_SCRIPT = """
local key = KEYS[1]
local ts = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local threshold = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])
redis.call('ZADD', key, ts, ARGV[5])
local newest = redis.call('ZRANGE', key, -1, -1, 'WITHSCORES')
local cutoff = tonumber(newest[2]) - window
redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. cutoff)
local count = redis.call('ZCARD', key)
if count >= threshold then
  redis.call('DEL', key)
  return {count, 1}
end
redis.call('EXPIRE', key, ttl)
return {count, 0}
"""


class RedisRollingCounter:
    """Rolling counters as Redis sorted sets scored by event timestamp."""

    def __init__(self, client: redis.Redis):
        self.client = client
        self._hit = client.register_script(_HIT_SCRIPT)

    @staticmethod
    def _key(rule_id: str, scope_key: str) -> str:
        return f"{COUNTER_PREFIX}:{rule_id}:{scope_key}"

    async def hit(
        self,
        rule_id: str,
        scope_key: str,
        at: datetime,
        window: timedelta,
        threshold: int,
    ) -> CounterHit:
        ts = at.timestamp()
        window_seconds = window.total_seconds()
        count, triggered = await self._hit(
            keys=[self._key(rule_id, scope_key)],
            args=[
                repr(ts),
                repr(window_seconds),
                threshold,
                int(math.ceil(window_seconds)) + 60,
                f"{ts!r}:{uuid.uuid4().hex}",
            ],
        )
        return CounterHit(count=int(count), triggered=bool(int(triggered)))

    async def count(self, rule_id: str, scope_key: str) -> int:
        return int(await self.client.zcard(self._key(rule_id, scope_key)))

    async def reset(self, rule_id: str, scope_key: str | None = None) -> None:
        if scope_key is not None:
            await self.client.delete(self._key(rule_id, scope_key))
            return
        keys = [key async for key in self.client.scan_iter(match=f"{COUNTER_PREFIX}:{rule_id}:*")]
        if keys:
            await self.client.delete(*keys)

    async def sweep(self, now: datetime) -> int:
        # Keys carry a TTL of window + 60s; Redis expires them on its own.
        return 0


class RedisSuppressionLedger:
    """
    Suppression entries as Redis strings holding the expiry timestamp.

    The stored timestamp is authoritative; the key TTL only bounds storage
    and keeps a grace period so events replayed slightly late still see it.
    """

    def __init__(self, client: redis.Redis, grace_seconds: int = 3600):
        self.client = client
        self.grace_seconds = grace_seconds

    @staticmethod
    def _key(rule_id: str, scope_key: str) -> str:
        return f"{SUPPRESS_PREFIX}:{rule_id}:{scope_key}"

    async def suppress(self, rule_id: str, scope_key: str, until: datetime) -> None:
        remaining = max(math.ceil(until.timestamp() - time.time()), 0)
        await self.client.set(
            self._key(rule_id, scope_key),
            repr(until.timestamp()),
            ex=remaining + self.grace_seconds,
        )

    async def is_suppressed(self, rule_id: str, scope_key: str, now: datetime) -> bool:
        raw = await self.client.get(self._key(rule_id, scope_key))
        if raw is None:
            return False
        if now.timestamp() > float(raw):
            await self.client.delete(self._key(rule_id, scope_key))
            return False
        return True

    async def clear(self, rule_id: str) -> None:
        keys = [key async for key in self.client.scan_iter(match=f"{SUPPRESS_PREFIX}:{rule_id}:*")]
        if keys:
            await self.client.delete(*keys)

    async def sweep(self, now: datetime) -> int:
        return 0


def build_ephemeral_stores(settings, client: redis.Redis | None = None):
    """
    Create the (counter, ledger) pair selected by EPHEMERAL_BACKEND.

    Returns:
        Tuple of rolling counter and suppression ledger
    """
    if settings.EPHEMERAL_BACKEND == "redis":
        client = client or redis.from_url(settings.REDIS_URL)
        logger.info("ephemeral_store_configured", backend="redis")
        return RedisRollingCounter(client), RedisSuppressionLedger(client)

    logger.info("ephemeral_store_configured", backend="memory")
    return MemoryRollingCounter(), MemorySuppressionLedger()
