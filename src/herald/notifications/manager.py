"""Notification manager — enqueue API and notifier lifecycle.

Learn: The manager is what product code talks to:

    manager = Manager(settings, store, wake)
    await manager.start_notifiers()
    msg_id = await manager.enqueue(
        "bob@example.com", TEMPLATE_WORKSPACE_DELETED, "smtp",
        {"workspace": "dev"}, "Your workspace was deleted",
    )
    ...
    await manager.stop()

enqueue() only inserts a row and publishes a wake signal, so its latency
never depends on dispatchers. Delivery happens on the notifiers this
manager starts — and on the notifiers of every other process pointed at
the same database.
"""

import asyncio
import os
import socket
import uuid
from typing import Mapping, Optional

import structlog

from herald.config import Settings
from herald.notifications.exceptions import ManagerStateError, ShutdownTimeoutError
from herald.notifications.notifier import Notifier
from herald.notifications.registry import DispatcherRegistry, default_registry
from herald.notifications.store import NotificationStore
from herald.notifications.types import Template
from herald.notifications.wake import Unsubscribe, WakeChannel

logger = structlog.get_logger()


def _instance_id() -> str:
    """Identifies this process in leased_by, e.g. 'web-1:4242:1a2b'."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:4]}"


class Manager:
    def __init__(
        self,
        settings: Settings,
        store: NotificationStore,
        wake: WakeChannel,
        registry: Optional[DispatcherRegistry] = None,
    ):
        self.settings = settings
        self.store = store
        self.wake = wake
        self.registry = registry if registry is not None else default_registry(settings)
        self.registry.freeze()
        self.store.accept_methods(self.registry.methods())
        self.instance_id = _instance_id()

        self._notifiers: list[Notifier] = []
        self._tasks: list[asyncio.Task] = []
        self._unsubscribe: Optional[Unsubscribe] = None
        self._started = False
        self._stopped = False

    # ─── Enqueue ─────────────────────────────────────────

    async def enqueue(
        self,
        recipient: str,
        template: Template,
        method: str,
        labels: Optional[Mapping[str, str]] = None,
        title: str = "",
    ) -> uuid.UUID:
        """Persist a notification and wake idle notifiers.

        Raises InvalidMessageError for structural problems. Dispatcher
        validation (e.g. required labels) happens later, at dispatch.
        """
        msg_id = await self.store.insert(recipient, template, method, labels, title)

        try:
            await self.wake.publish()
        except Exception:
            # The row is committed; the fallback poll will find it.
            logger.warning("manager.wake_publish_failed", msg_id=str(msg_id), exc_info=True)

        return msg_id

    # ─── Lifecycle ───────────────────────────────────────

    async def start_notifiers(self, count: Optional[int] = None) -> None:
        """Spawn notifier tasks. Allowed once per manager."""
        if self._started:
            raise ManagerStateError("Notifiers already started for this manager")
        if self._stopped:
            raise ManagerStateError("Manager is stopped")
        count = count if count is not None else self.settings.notifier_count
        if count < 1:
            raise ValueError("Notifier count must be at least 1")
        self._started = True

        self._unsubscribe = await self.wake.subscribe(self._on_wake)

        for i in range(count):
            notifier = Notifier(
                f"{self.instance_id}/{i}",
                self.store,
                self.registry,
                lease_count=self.settings.lease_count,
                lease_seconds=self.settings.lease_seconds,
                fetch_interval=self.settings.fetch_interval,
                dispatch_timeout=self.settings.dispatch_timeout,
            )
            self._notifiers.append(notifier)
            self._tasks.append(
                asyncio.create_task(notifier.run(), name=f"notifier-{notifier.id}")
            )

        logger.info(
            "manager.started",
            instance_id=self.instance_id,
            notifiers=count,
            methods=self.registry.methods(),
        )

    def _on_wake(self) -> None:
        for notifier in self._notifiers:
            notifier.wake()

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop all notifiers, waiting for in-flight batches to finish.

        Notifiers start no new lease once stop begins; a lease already in
        flight completes and its batch is delivered and finalized. If the
        notifiers haven't drained after timeout seconds they are cancelled
        and ShutdownTimeoutError is raised; their leases expire and the
        messages are picked up again later. Calling stop twice is a no-op.
        """
        if self._stopped:
            return
        self._stopped = True
        timeout = timeout if timeout is not None else self.settings.shutdown_timeout

        logger.info("manager.stopping", notifiers=len(self._notifiers))
        for notifier in self._notifiers:
            notifier.stop()

        if self._unsubscribe is not None:
            try:
                await self._unsubscribe()
            except Exception:
                logger.warning("manager.unsubscribe_failed", exc_info=True)
            self._unsubscribe = None

        if not self._tasks:
            return

        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error("manager.notifier_crashed", exc_info=task.exception())

        if pending:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            logger.error("manager.stop_timeout", pending=len(pending), timeout=timeout)
            raise ShutdownTimeoutError(
                f"{len(pending)} notifier(s) still draining after {timeout:.1f}s"
            )

        logger.info("manager.stopped", stats=self.get_stats())

    @property
    def running(self) -> bool:
        return self._started and not self._stopped

    # ─── Stats ───────────────────────────────────────────

    def get_stats(self) -> dict:
        """Aggregate notifier counters for monitoring."""
        totals = {"leased": 0, "sent": 0, "retried": 0, "failed": 0, "conflicts": 0, "errors": 0}
        for notifier in self._notifiers:
            for key in totals:
                totals[key] += getattr(notifier.stats, key)
        return {
            "instance_id": self.instance_id,
            "notifiers": len(self._notifiers),
            "running": self.running,
            **totals,
        }
