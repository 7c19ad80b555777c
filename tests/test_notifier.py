"""Notifier tests — one leased batch through resolve → validate → send.

Learn: Most tests drive process_batch() directly so each step is
deterministic; a few run the full loop to check wake-ups, stop and the
error backoff.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from herald.notifications.exceptions import DispatchError
from herald.notifications.notifier import Notifier
from herald.notifications.registry import DispatcherRegistry
from herald.notifications.types import TEMPLATE_WORKSPACE_DELETED

from fakes import (
    BlockingDispatcher,
    BrokenValidatorDispatcher,
    FakeDispatcher,
    RecordingDispatcher,
    ScriptedDispatcher,
    retryable,
)


def _notifier(store, *dispatchers, **kwargs) -> Notifier:
    kwargs.setdefault("lease_seconds", 5.0)
    kwargs.setdefault("fetch_interval", 10.0)
    return Notifier("test/0", store, DispatcherRegistry(*dispatchers), **kwargs)


async def _enqueue(store, method="smtp", labels=None):
    return await store.insert(
        "bob@example.com",
        TEMPLATE_WORKSPACE_DELETED,
        method,
        labels if labels is not None else {"type": "success"},
        "Workspace deleted",
    )


# ═══════════════════════════════════════════════════════════
# Outcomes
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_successful_send_marks_sent(store, fake_dispatcher):
    msg_id = await _enqueue(store)
    notifier = _notifier(store, fake_dispatcher)

    assert await notifier.process_batch() == 1

    assert fake_dispatcher.succeeded == [msg_id]
    assert (await store.get(msg_id)).status == "sent"
    assert notifier.stats.sent == 1
    assert notifier.stats.leased == 1


@pytest.mark.asyncio
async def test_unknown_method_fails_permanently(store, fake_dispatcher):
    """Enqueue accepts 'webhook', but this notifier has no dispatcher for it."""
    msg_id = await _enqueue(store, method="webhook")
    notifier = _notifier(store, fake_dispatcher)

    await notifier.process_batch()

    row = await store.get(msg_id)
    assert row.status == "permanent_failure"
    assert "webhook" in row.status_reason
    assert notifier.stats.failed == 1


@pytest.mark.asyncio
async def test_missing_labels_fail_without_sending(store, fake_dispatcher):
    msg_id = await _enqueue(store, labels={"other": "x"})
    notifier = _notifier(store, fake_dispatcher)

    await notifier.process_batch()

    row = await store.get(msg_id)
    assert row.status == "permanent_failure"
    assert "type" in row.status_reason
    assert row.attempt_count == 1
    assert fake_dispatcher.succeeded == []
    assert fake_dispatcher.failed == []


@pytest.mark.asyncio
async def test_retryable_errors_then_success(store):
    """Two transient failures, then delivery on the third attempt."""
    dispatcher = ScriptedDispatcher(retryable(), retryable())
    msg_id = await _enqueue(store)
    notifier = _notifier(store, dispatcher)

    for _ in range(2):
        await notifier.process_batch()
        assert (await store.get(msg_id)).status == "temporary_failure"

    await notifier.process_batch()

    row = await store.get(msg_id)
    assert row.status == "sent"
    assert row.attempt_count == 3
    assert dispatcher.calls == [msg_id] * 3
    assert dispatcher.delivered == [msg_id]
    assert notifier.stats.retried == 2
    assert notifier.stats.sent == 1


@pytest.mark.asyncio
async def test_retries_stop_at_max_attempts(store):
    """The store fixture allows 3 attempts."""
    dispatcher = ScriptedDispatcher(always=retryable("mailbox busy"))
    msg_id = await _enqueue(store)
    notifier = _notifier(store, dispatcher)

    for _ in range(3):
        assert await notifier.process_batch() == 1
    assert await notifier.process_batch() == 0

    row = await store.get(msg_id)
    assert row.status == "permanent_failure"
    assert row.status_reason == "mailbox busy"
    assert len(dispatcher.calls) == 3


@pytest.mark.asyncio
async def test_non_retryable_error_fails_permanently(store):
    dispatcher = ScriptedDispatcher(always=DispatchError("550 no such user"))
    msg_id = await _enqueue(store)
    notifier = _notifier(store, dispatcher)

    await notifier.process_batch()
    assert await notifier.process_batch() == 0

    row = await store.get(msg_id)
    assert row.status == "permanent_failure"
    assert row.status_reason == "550 no such user"
    assert dispatcher.calls == [msg_id]


@pytest.mark.asyncio
async def test_unexpected_exception_is_permanent(store):
    dispatcher = ScriptedDispatcher(always=RuntimeError("boom"))
    msg_id = await _enqueue(store)
    notifier = _notifier(store, dispatcher)

    await notifier.process_batch()

    row = await store.get(msg_id)
    assert row.status == "permanent_failure"
    assert row.status_reason == "RuntimeError: boom"


@pytest.mark.asyncio
async def test_validator_crash_fails_only_its_message(store):
    """A raising validate() is a permanent failure, not a crashed batch."""
    broken = BrokenValidatorDispatcher()
    webhook = FakeDispatcher(name="webhook")
    broken_id = await _enqueue(store)
    ok_id = await _enqueue(store, method="webhook")
    notifier = _notifier(store, broken, webhook)

    assert await notifier.process_batch() == 2

    row = await store.get(broken_id)
    assert row.status == "permanent_failure"
    assert row.status_reason.startswith("KeyError")
    assert broken.sent == []
    assert (await store.get(ok_id)).status == "sent"
    assert webhook.succeeded == [ok_id]
    assert notifier.stats.failed == 1
    assert notifier.stats.sent == 1


@pytest.mark.asyncio
async def test_crashing_deliver_does_not_abort_batch(store, fake_dispatcher):
    first = await _enqueue(store)
    second = await _enqueue(store)
    notifier = _notifier(store, fake_dispatcher)
    real_deliver = notifier.deliver

    async def deliver(message):
        if message.id == first:
            raise RuntimeError("boom")
        await real_deliver(message)

    notifier.deliver = deliver

    assert await notifier.process_batch() == 2

    assert (await store.get(second)).status == "sent"
    assert (await store.get(first)).status == "leased"
    assert notifier.stats.errors == 1


@pytest.mark.asyncio
async def test_send_timeout_is_retryable(store):
    dispatcher = BlockingDispatcher()
    msg_id = await _enqueue(store)
    notifier = _notifier(store, dispatcher, dispatch_timeout=0.05)

    await notifier.process_batch()

    row = await store.get(msg_id)
    assert row.status == "temporary_failure"
    assert "timed out" in row.status_reason


def test_dispatch_timeout_defaults_below_lease():
    notifier = _notifier(None, FakeDispatcher(), lease_seconds=10.0)
    assert notifier.dispatch_timeout == pytest.approx(9.0)


@pytest.mark.asyncio
async def test_send_outliving_lease_is_discarded(store):
    """A result finalized after the lease expired is a conflict, not a state change."""
    dispatcher = RecordingDispatcher(delay=0.2)
    msg_id = await _enqueue(store)
    notifier = _notifier(store, dispatcher, lease_seconds=0.05, dispatch_timeout=1.0)

    await notifier.process_batch()

    assert dispatcher.deliveries == {msg_id: 1}
    assert notifier.stats.conflicts == 1
    assert notifier.stats.sent == 0
    assert (await store.get(msg_id)).status == "leased"


@pytest.mark.asyncio
async def test_batch_delivers_each_message_once(store):
    dispatcher = RecordingDispatcher(delay=0.01)
    ids = [await _enqueue(store) for _ in range(5)]
    notifier = _notifier(store, dispatcher, lease_count=10)

    assert await notifier.process_batch() == 5

    assert dispatcher.deliveries == {msg_id: 1 for msg_id in ids}
    counts = await store.count_by_status()
    assert counts["sent"] == 5


# ═══════════════════════════════════════════════════════════
# Run loop
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_stopped_notifier_leases_nothing(store, fake_dispatcher):
    msg_id = await _enqueue(store)
    notifier = _notifier(store, fake_dispatcher)

    notifier.stop()

    assert notifier.stopping
    assert await notifier.process_batch() == 0
    assert (await store.get(msg_id)).status == "pending"


@pytest.mark.asyncio
async def test_wake_interrupts_idle_wait(store, fake_dispatcher, eventually):
    notifier = _notifier(store, fake_dispatcher, fetch_interval=30.0)
    task = asyncio.create_task(notifier.run())
    try:
        # First lease finds nothing; the notifier is now idle for 30s.
        await asyncio.sleep(0.1)

        msg_id = await _enqueue(store)
        notifier.wake()

        await eventually(lambda: fake_dispatcher.succeeded == [msg_id], timeout=2.0)
    finally:
        notifier.stop()
        await asyncio.wait_for(task, timeout=5)


@pytest.mark.asyncio
async def test_stop_ends_run_loop(store, fake_dispatcher):
    notifier = _notifier(store, fake_dispatcher, fetch_interval=30.0)
    task = asyncio.create_task(notifier.run())
    await asyncio.sleep(0.05)

    notifier.stop()

    await asyncio.wait_for(task, timeout=2)
    assert task.done()


@pytest.mark.asyncio
async def test_lease_errors_back_off_and_continue(fake_dispatcher, eventually):
    store = AsyncMock()
    store.lease_batch.side_effect = RuntimeError("database unavailable")
    notifier = _notifier(store, fake_dispatcher)

    task = asyncio.create_task(notifier.run())
    await eventually(lambda: notifier.stats.errors >= 1)
    assert not task.done()

    notifier.stop()
    await asyncio.wait_for(task, timeout=2)
    store.finalize.assert_not_called()
