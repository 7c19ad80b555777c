"""Wake channel — "new work may exist" signals for idle notifiers.

Learn: Without a wake signal an idle notifier only notices new messages on
its next fallback poll (fetch_interval). Enqueue publishes a signal after
the insert commits; every subscribed manager wakes its idle notifiers,
which then race to lease through the store as usual.

Signals are fire-and-forget. If one is lost (no subscriber, dropped
connection) nothing breaks: the message is already durable and the
fallback poll picks it up. That's why the signal carries no payload.

Backends:
- MemoryWakeChannel   — one process (tests, single-node setups)
- RedisWakeChannel    — Redis pub/sub
- PostgresWakeChannel — PostgreSQL LISTEN/NOTIFY on the queue's own database
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

import asyncpg
import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger()

WakeCallback = Callable[[], None]
Unsubscribe = Callable[[], Awaitable[None]]


class WakeChannel(ABC):
    """Publish/subscribe for wake signals."""

    @abstractmethod
    async def publish(self) -> None:
        """Tell every subscriber that new work may exist."""

    @abstractmethod
    async def subscribe(self, callback: WakeCallback) -> Unsubscribe:
        """Call callback on every signal until the returned coroutine runs.

        The callback runs on the event loop and must not block.
        """

    async def close(self) -> None:
        """Release connections held for publishing."""


# ─── In-process ──────────────────────────────────────────


class MemoryWakeChannel(WakeChannel):
    def __init__(self):
        self._subscribers: list[WakeCallback] = []

    async def publish(self) -> None:
        for callback in list(self._subscribers):
            callback()

    async def subscribe(self, callback: WakeCallback) -> Unsubscribe:
        self._subscribers.append(callback)

        async def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


# ─── Redis pub/sub ───────────────────────────────────────


class RedisWakeChannel(WakeChannel):
    """Wake signals over a Redis pub/sub channel.

    Learn: Redis pub/sub is fire-and-forget — exactly the delivery
    guarantee a wake signal needs. Each subscription gets its own
    PubSub connection and a listener task forwarding messages.
    """

    def __init__(self, redis: aioredis.Redis, channel: str):
        self._redis = redis
        self.channel = channel

    @classmethod
    def from_url(cls, url: str, channel: str) -> "RedisWakeChannel":
        return cls(aioredis.from_url(url, decode_responses=True), channel)

    async def publish(self) -> None:
        await self._redis.publish(self.channel, "wake")

    async def subscribe(self, callback: WakeCallback) -> Unsubscribe:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self.channel)

        async def listener():
            while True:
                try:
                    async for message in pubsub.listen():
                        if message["type"] == "message":
                            callback()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    # redis-py resubscribes on reconnect; lost signals are
                    # covered by the fallback poll.
                    logger.exception("wake.redis_listener_error", channel=self.channel)
                    await asyncio.sleep(1)

        task = asyncio.create_task(listener())

        async def unsubscribe() -> None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()

        return unsubscribe

    async def close(self) -> None:
        await self._redis.aclose()


# ─── PostgreSQL LISTEN/NOTIFY ────────────────────────────


def asyncpg_dsn(database_url: str) -> str:
    """Convert a SQLAlchemy URL to a plain asyncpg DSN."""
    return database_url.replace("postgresql+asyncpg://", "postgresql://", 1)


class PostgresWakeChannel(WakeChannel):
    """Wake signals over PostgreSQL LISTEN/NOTIFY.

    Learn: asyncpg delivers notifications to a listener callback on a
    dedicated connection. Each subscription holds one such connection;
    publishing goes through a small pool because an asyncpg connection
    can't run two commands at once.
    """

    def __init__(self, dsn: str, channel: str):
        self.dsn = asyncpg_dsn(dsn)
        self.channel = channel
        self._pool: Optional[asyncpg.Pool] = None
        self._pool_lock = asyncio.Lock()

    async def _get_pool(self) -> asyncpg.Pool:
        async with self._pool_lock:
            if self._pool is None:
                self._pool = await asyncpg.create_pool(self.dsn, min_size=1, max_size=2)
            return self._pool

    async def publish(self) -> None:
        pool = await self._get_pool()
        await pool.execute("SELECT pg_notify($1, '')", self.channel)

    async def subscribe(self, callback: WakeCallback) -> Unsubscribe:
        conn = await asyncpg.connect(self.dsn)

        def on_notify(connection, pid, channel, payload):
            callback()

        await conn.add_listener(self.channel, on_notify)

        async def unsubscribe() -> None:
            try:
                await conn.remove_listener(self.channel, on_notify)
            finally:
                await conn.close()

        return unsubscribe

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
