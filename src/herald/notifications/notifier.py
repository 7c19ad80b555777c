"""Notifier — a worker that leases, validates, dispatches and finalizes.

Learn: Per leased message the notifier walks this state machine:

  1. resolve the dispatcher  — unknown method  → permanent_failure
  2. validate labels         — missing labels  → permanent_failure
  3. send (bounded timeout)  — ok              → sent
                             — retryable error → temporary_failure
                                                 (permanent once attempts run out)
                             — other error     → permanent_failure

Messages in one batch are delivered concurrently. The send timeout is
derived from the lease duration, so a send is abandoned before another
notifier could reclaim the message.

When a lease comes back empty the notifier sleeps until it's woken
(wake channel) or fetch_interval passes, whichever comes first.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import structlog

from herald.notifications.exceptions import (
    DispatchError,
    UnknownMethodError,
    ValidationError,
)
from herald.notifications.registry import DispatcherRegistry
from herald.notifications.store import NotificationStore
from herald.notifications.types import Message, Outcome, Payload

logger = structlog.get_logger()

# Pause after an unexpected error in the lease loop (e.g. database down).
ERROR_BACKOFF_SECONDS = 1.0


@dataclass
class NotifierStats:
    """Runtime counters for monitoring."""
    leased: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    conflicts: int = 0
    errors: int = 0


class Notifier:
    def __init__(
        self,
        notifier_id: str,
        store: NotificationStore,
        registry: DispatcherRegistry,
        *,
        lease_count: int = 20,
        lease_seconds: float = 120.0,
        fetch_interval: float = 15.0,
        dispatch_timeout: Optional[float] = None,
    ):
        self.id = notifier_id
        self.store = store
        self.registry = registry
        self.lease_count = lease_count
        self.lease_seconds = lease_seconds
        self.fetch_interval = fetch_interval
        self.dispatch_timeout = (
            dispatch_timeout if dispatch_timeout is not None else lease_seconds * 0.9
        )
        self.stats = NotifierStats()
        self._wakeup = asyncio.Event()
        self._stopping = asyncio.Event()

    # ─── Lifecycle ───────────────────────────────────────

    async def run(self) -> None:
        """Lease and deliver until stop() is called.

        Stop is honoured between batches: a batch already leased is
        always delivered and finalized before the loop exits.
        """
        structlog.contextvars.bind_contextvars(notifier_id=self.id)
        logger.info("notifier.started", lease_count=self.lease_count)

        while not self._stopping.is_set():
            # Cleared before leasing so a wake during the lease isn't lost.
            self._wakeup.clear()
            try:
                processed = await self.process_batch()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("notifier.lease_error")
                self.stats.errors += 1
                await self._idle(ERROR_BACKOFF_SECONDS)
                continue

            if processed == 0:
                await self._idle(self.fetch_interval)

        logger.info("notifier.stopped", sent=self.stats.sent, failed=self.stats.failed)

    def wake(self) -> None:
        self._wakeup.set()

    def stop(self) -> None:
        self._stopping.set()
        self._wakeup.set()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    async def _idle(self, timeout: float) -> None:
        if self._stopping.is_set():
            return
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    # ─── Batch processing ────────────────────────────────

    async def process_batch(self) -> int:
        """Lease one batch and deliver it. Returns the number leased."""
        if self._stopping.is_set():
            return 0

        messages = await self.store.lease_batch(
            self.id, self.lease_count, self.lease_seconds
        )
        if not messages:
            return 0

        self.stats.leased += len(messages)
        logger.debug("notifier.leased", count=len(messages))
        results = await asyncio.gather(
            *(self.deliver(msg) for msg in messages), return_exceptions=True
        )
        for msg, result in zip(messages, results):
            if isinstance(result, Exception):
                # Lease expiry hands the message to the next attempt.
                logger.error(
                    "notification.deliver_crashed", msg_id=str(msg.id), exc_info=result
                )
                self.stats.errors += 1
        return len(messages)

    async def deliver(self, message: Message) -> None:
        """Run one leased message through resolve → validate → send."""
        log = logger.bind(
            msg_id=str(message.id),
            method=message.method,
            attempt=message.attempt_count,
        )

        try:
            dispatcher = self.registry.resolve(message.method)
        except UnknownMethodError as e:
            log.warning("notification.unknown_method")
            await self._finalize(message, Outcome.FAILED, str(e))
            return

        try:
            ok, missing = dispatcher.validate(message.labels.copy())
        except Exception as e:
            log.exception("notification.validate_crashed")
            await self._finalize(message, Outcome.FAILED, f"{type(e).__name__}: {e}")
            return
        if not ok:
            err = ValidationError(message.method, missing)
            log.warning("notification.invalid", missing=missing)
            await self._finalize(message, Outcome.FAILED, str(err))
            return

        payload = Payload(
            notification_name=message.notification_name,
            recipient=message.recipient,
            title=message.title,
            labels=message.labels.copy(),
        )

        try:
            await asyncio.wait_for(
                dispatcher.send(message.id, payload),
                timeout=self.dispatch_timeout,
            )
        except asyncio.TimeoutError:
            reason = f"dispatch timed out after {self.dispatch_timeout:.1f}s"
            log.warning("notification.send_timeout")
            await self._finalize(message, Outcome.RETRY, reason)
        except DispatchError as e:
            outcome = Outcome.RETRY if e.retryable else Outcome.FAILED
            log.warning("notification.send_failed", error=str(e), retryable=e.retryable)
            await self._finalize(message, outcome, str(e))
        except Exception as e:
            # Not declared retryable by the dispatcher: permanent.
            log.exception("notification.send_crashed")
            await self._finalize(message, Outcome.FAILED, f"{type(e).__name__}: {e}")
        else:
            log.info("notification.sent")
            await self._finalize(message, Outcome.SENT)

    async def _finalize(
        self, message: Message, outcome: Outcome, reason: Optional[str] = None
    ) -> None:
        try:
            applied = await self.store.finalize(
                message.id, message.lease_token, outcome, reason
            )
        except Exception:
            # The lease expires and the message gets another attempt.
            logger.exception("notification.finalize_error", msg_id=str(message.id))
            self.stats.errors += 1
            return

        if not applied:
            self.stats.conflicts += 1
        elif outcome == Outcome.SENT:
            self.stats.sent += 1
        elif outcome == Outcome.RETRY:
            self.stats.retried += 1
        else:
            self.stats.failed += 1
