"""SQLAlchemy ORM models — the durable notification queue.

Learn: One row per notification message. The row is both the queue entry
and the lease record: status, leased_by, lease_token and leased_until are
updated with conditional UPDATEs (compare-and-swap on the row), which is
what keeps two notifiers — in the same process or not — from ever holding
the same message at once.

Key concepts:
- UUID primary keys, generated at enqueue time and handed back to callers
- JSON labels (plain JSON everywhere, so key order survives a round trip)
- Timestamps are written from Python so every dialect stores the same format
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


class NotificationMessage(Base):
    """A notification waiting for, undergoing, or done with delivery.

    Learn: Lifecycle
      pending → leased → sent
                       → temporary_failure (lease-eligible again)
                       → permanent_failure
    sent and permanent_failure are terminal; nothing updates those rows.
    """

    __tablename__ = "notification_messages"
    __table_args__ = (
        Index("ix_notification_messages_status_lease", "status", "leased_until"),
        Index("ix_notification_messages_created_at", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=new_uuid
    )
    recipient: Mapped[str] = mapped_column(String(320), nullable=False)
    template_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    notification_name: Mapped[str] = mapped_column(String(200), nullable=False)
    method: Mapped[str] = mapped_column(String(50), nullable=False)
    labels: Mapped[dict] = mapped_column(
        JSON, nullable=False, default=dict
    )
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")

    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default="pending"
    )  # pending, leased, sent, temporary_failure, permanent_failure
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    leased_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    lease_token: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    leased_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    status_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
