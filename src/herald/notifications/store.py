"""Notification store — durable queue with lease-based mutual exclusion.

Learn: The store is the only shared mutable state in the system. Notifiers
in this process and in every other process coordinate through it alone:

  insert()      — enqueue a pending row; structural checks only
  lease_batch() — claim up to N eligible rows, one compare-and-swap each
  finalize()    — record the outcome, only if the caller still holds the lease

Each lease is an atomic conditional UPDATE:

    UPDATE notification_messages SET status='leased', lease_token=:t, ...
    WHERE id = :id AND (status IN ('pending', 'temporary_failure')
                        OR (status = 'leased' AND leased_until < :now))

Whoever sees rowcount == 1 owns the message until leased_until. Nobody
holds a row lock while a dispatcher runs, and a crashed worker's claim
simply expires — that expiry is the whole recovery mechanism.

Attempts are counted when a message is leased, so a worker that dies mid
send still uses up an attempt and a poison message can't loop forever.
"""

import uuid
from datetime import timedelta
from typing import Iterable, Mapping, Optional

import structlog
from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from herald.db.models import NotificationMessage, utcnow
from herald.notifications.exceptions import InvalidMessageError
from herald.notifications.types import (
    LEASABLE_STATUSES,
    Labels,
    Message,
    MessageStatus,
    NotificationMethod,
    Outcome,
    Template,
)

logger = structlog.get_logger()


def _eligible(now):
    """Rows a notifier may lease right now."""
    return or_(
        NotificationMessage.status.in_(LEASABLE_STATUSES),
        and_(
            NotificationMessage.status == MessageStatus.LEASED.value,
            NotificationMessage.leased_until < now,
        ),
    )


def _to_message(row: NotificationMessage) -> Message:
    return Message(
        id=row.id,
        recipient=row.recipient,
        template_id=row.template_id,
        notification_name=row.notification_name,
        method=row.method,
        labels=Labels(row.labels or {}),
        title=row.title,
        attempt_count=row.attempt_count,
        lease_token=row.lease_token,
        created_at=row.created_at,
    )


_CLEAR_LEASE = {"leased_by": None, "lease_token": None, "leased_until": None}


class NotificationStore:
    """Durable notification queue backed by SQLAlchemy (PostgreSQL or SQLite)."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int = 5,
        methods: Optional[Iterable[str]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._session_factory = session_factory
        self.max_attempts = max_attempts
        self.methods = frozenset(
            methods if methods is not None else (m.value for m in NotificationMethod)
        )

    def accept_methods(self, methods: Iterable[str]) -> None:
        """Also accept these methods at insert, e.g. custom registered dispatchers."""
        self.methods = self.methods | frozenset(methods)

    # ─── Enqueue ─────────────────────────────────────────

    async def insert(
        self,
        recipient: str,
        template: Template,
        method: str,
        labels: Optional[Mapping[str, str]] = None,
        title: str = "",
    ) -> uuid.UUID:
        """Persist a pending message and return its ID.

        Only checks structure (known method, single-line recipient, string
        labels). Dispatcher-specific validation waits until dispatch so
        enqueue never depends on dispatcher logic.
        """
        method = method.value if isinstance(method, NotificationMethod) else method
        if method not in self.methods:
            available = ", ".join(sorted(self.methods))
            raise InvalidMessageError(
                f"Unknown notification method '{method}'. Available: {available}"
            )
        if not recipient or not recipient.strip():
            raise InvalidMessageError("Notification recipient must not be empty")
        if "\n" in recipient or "\r" in recipient:
            raise InvalidMessageError(f"Malformed notification recipient {recipient!r}")
        labels = dict(labels or {})
        for key, value in labels.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise InvalidMessageError(
                    f"Labels must map strings to strings, got {key!r}: {value!r}"
                )

        now = utcnow()
        row = NotificationMessage(
            id=uuid.uuid4(),
            recipient=recipient.strip(),
            template_id=template.id,
            notification_name=template.name,
            method=method,
            labels=labels,
            title=title or "",
            status=MessageStatus.PENDING.value,
            attempt_count=0,
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as db:
            db.add(row)
            await db.commit()

        logger.debug(
            "notification.enqueued",
            msg_id=str(row.id),
            method=method,
            template=template.name,
        )
        return row.id

    # ─── Leasing ─────────────────────────────────────────

    async def lease_batch(
        self, owner: str, max_count: int, lease_seconds: float
    ) -> list[Message]:
        """Atomically claim up to max_count eligible messages for owner.

        Learn: Candidates are read without locks, then each one is claimed
        with its own conditional UPDATE. Losing a race just means another
        notifier got that row first — the rowcount tells us which.
        """
        if max_count < 1:
            return []

        now = utcnow()
        token = uuid.uuid4()
        leased_until = now + timedelta(seconds=lease_seconds)

        async with self._session_factory() as db:
            await self._fail_exhausted_leases(db, now)

            result = await db.execute(
                select(NotificationMessage.id)
                .where(_eligible(now))
                .order_by(NotificationMessage.created_at.asc(), NotificationMessage.id)
                .limit(max_count)
            )
            candidates = list(result.scalars().all())

            claimed = 0
            try:
                for msg_id in candidates:
                    result = await db.execute(
                        update(NotificationMessage)
                        .where(NotificationMessage.id == msg_id, _eligible(now))
                        .values(
                            status=MessageStatus.LEASED.value,
                            leased_by=owner,
                            lease_token=token,
                            leased_until=leased_until,
                            attempt_count=NotificationMessage.attempt_count + 1,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    await db.commit()
                    claimed += result.rowcount

                if not claimed:
                    return []

                result = await db.execute(
                    select(NotificationMessage)
                    .where(NotificationMessage.lease_token == token)
                    .order_by(NotificationMessage.created_at.asc(), NotificationMessage.id)
                )
                messages = [_to_message(row) for row in result.scalars().all()]
            except Exception:
                # The caller never sees these rows; release them now.
                if claimed:
                    await self._release_claims(token, owner)
                raise

        if claimed != len(candidates):
            logger.debug(
                "notification.lease_contended",
                owner=owner,
                candidates=len(candidates),
                claimed=claimed,
            )
        return messages

    async def _release_claims(self, token: uuid.UUID, owner: str) -> None:
        """Undo a partially completed lease_batch.

        Rows go back to the state they were claimed from and the attempt
        taken at claim time is returned. Runs in a fresh session because
        the original one may be unusable.
        """
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    update(NotificationMessage)
                    .where(
                        NotificationMessage.lease_token == token,
                        NotificationMessage.status == MessageStatus.LEASED.value,
                    )
                    .values(
                        status=case(
                            (
                                NotificationMessage.attempt_count > 1,
                                MessageStatus.TEMPORARY_FAILURE.value,
                            ),
                            else_=MessageStatus.PENDING.value,
                        ),
                        attempt_count=NotificationMessage.attempt_count - 1,
                        updated_at=utcnow(),
                        **_CLEAR_LEASE,
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
            logger.warning(
                "notification.lease_released", owner=owner, count=result.rowcount
            )
        except Exception:
            # Leases still expire on their own; the original error is the one to raise.
            logger.exception("notification.lease_release_failed", owner=owner)

    async def _fail_exhausted_leases(self, db: AsyncSession, now) -> None:
        """Expired leases with no attempts left will never be retried."""
        result = await db.execute(
            update(NotificationMessage)
            .where(
                NotificationMessage.status == MessageStatus.LEASED.value,
                NotificationMessage.leased_until < now,
                NotificationMessage.attempt_count >= self.max_attempts,
            )
            .values(
                status=MessageStatus.PERMANENT_FAILURE.value,
                status_reason="lease expired on the final attempt",
                updated_at=now,
                **_CLEAR_LEASE,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount:
            logger.warning("notification.leases_exhausted", count=result.rowcount)

    # ─── Finalize ────────────────────────────────────────

    async def finalize(
        self,
        message_id: uuid.UUID,
        lease_token: uuid.UUID,
        outcome: Outcome,
        reason: Optional[str] = None,
    ) -> bool:
        """Record the outcome of a delivery attempt.

        Only applies while the caller's lease is current. A stale token
        (lease expired or re-leased) or an already-final message is a
        benign conflict: nothing changes and False comes back.

        Outcome.RETRY becomes temporary_failure while attempts remain,
        permanent_failure once attempt_count reaches max_attempts.
        """
        now = utcnow()

        if outcome == Outcome.SENT:
            values = {
                "status": MessageStatus.SENT.value,
                "sent_at": now,
                "status_reason": None,
            }
        elif outcome == Outcome.RETRY:
            values = {
                "status": case(
                    (
                        NotificationMessage.attempt_count >= self.max_attempts,
                        MessageStatus.PERMANENT_FAILURE.value,
                    ),
                    else_=MessageStatus.TEMPORARY_FAILURE.value,
                ),
                "status_reason": reason,
            }
        else:
            values = {
                "status": MessageStatus.PERMANENT_FAILURE.value,
                "status_reason": reason,
            }

        async with self._session_factory() as db:
            result = await db.execute(
                update(NotificationMessage)
                .where(
                    NotificationMessage.id == message_id,
                    NotificationMessage.status == MessageStatus.LEASED.value,
                    NotificationMessage.lease_token == lease_token,
                    NotificationMessage.leased_until >= now,
                )
                .values(updated_at=now, **values, **_CLEAR_LEASE)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if result.rowcount != 1:
            logger.warning(
                "notification.finalize_conflict",
                msg_id=str(message_id),
                outcome=outcome.value,
            )
            return False
        return True

    # ─── Reads ───────────────────────────────────────────

    async def get(self, message_id: uuid.UUID) -> Optional[NotificationMessage]:
        async with self._session_factory() as db:
            return await db.get(NotificationMessage, message_id)

    async def count_by_status(self) -> dict[str, int]:
        """Message counts per status (every status present, zero if none)."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(NotificationMessage.status, func.count())
                .group_by(NotificationMessage.status)
            )
            counts = {status.value: 0 for status in MessageStatus}
            for status, count in result.all():
                counts[status] = count
            return counts
