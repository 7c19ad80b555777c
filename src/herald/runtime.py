"""Herald process entry point — run notifiers until interrupted.

Learn: A herald process is just a Manager with notifiers and no callers.
Run as many as you like against the same database; the store's leases
keep them from delivering the same message twice. Product code that only
enqueues builds its own Manager and never starts notifiers.

Usage:
    herald run --notifiers 4
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

import structlog

from herald.config import Settings
from herald.db.engine import create_engine, create_session_factory
from herald.notifications.exceptions import ShutdownTimeoutError
from herald.notifications.manager import Manager
from herald.notifications.store import NotificationStore
from herald.notifications.wake import (
    MemoryWakeChannel,
    PostgresWakeChannel,
    RedisWakeChannel,
    WakeChannel,
)

logger = structlog.get_logger()


def configure_logging(debug: bool = False, json_logs: bool = False) -> None:
    """stdlib logging for libraries, structlog for our own events."""
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        # stdout is reserved for command output (e.g. enqueued message IDs).
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )


def build_wake_channel(settings: Settings) -> WakeChannel:
    if settings.wake_backend == "redis":
        return RedisWakeChannel.from_url(settings.redis_url, settings.wake_channel)
    if settings.wake_backend == "postgres":
        return PostgresWakeChannel(settings.database_url, settings.wake_channel)
    return MemoryWakeChannel()


async def run(settings: Settings, notifiers: Optional[int] = None) -> None:
    """Run notifiers until SIGINT/SIGTERM, then drain and exit."""
    engine = create_engine(settings.database_url, echo=settings.debug)
    store = NotificationStore(
        create_session_factory(engine), max_attempts=settings.max_send_attempts
    )
    wake = build_wake_channel(settings)
    manager = Manager(settings, store, wake)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    logger.info(
        "herald.starting",
        wake_backend=settings.wake_backend,
        db=settings.database_url.split("@")[-1],
    )

    try:
        await manager.start_notifiers(notifiers)
        await stop_requested.wait()
    finally:
        try:
            await manager.stop()
        except ShutdownTimeoutError:
            logger.error("herald.shutdown_timeout", timeout=settings.shutdown_timeout)
            raise
        finally:
            await wake.close()
            await engine.dispose()
            logger.info("herald.stopped")
