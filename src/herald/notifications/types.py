"""Value types shared by the store, dispatchers and notifiers."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class Labels(dict[str, str]):
    """Ordered key-value context attached to a notification.

    Learn: Labels are the only dispatcher input besides the envelope fields.
    Dispatchers declare which keys they need and check them with missing();
    an absent key reads as the empty string.
    """

    def get(self, key: str, default: str = "") -> str:  # type: ignore[override]
        return super().get(key, default)

    def missing(self, *keys: str) -> list[str]:
        return [k for k in keys if k not in self]

    def copy(self) -> "Labels":
        return Labels(self)


class NotificationMethod(str, Enum):
    """Delivery methods accepted at enqueue time."""

    SMTP = "smtp"
    WEBHOOK = "webhook"


class MessageStatus(str, Enum):
    PENDING = "pending"
    LEASED = "leased"
    SENT = "sent"
    TEMPORARY_FAILURE = "temporary_failure"
    PERMANENT_FAILURE = "permanent_failure"


# Statuses a notifier may lease without waiting for an expiry.
LEASABLE_STATUSES = (MessageStatus.PENDING.value, MessageStatus.TEMPORARY_FAILURE.value)


class Outcome(str, Enum):
    """What a notifier reports back for a leased message."""

    SENT = "sent"
    RETRY = "retry"
    FAILED = "failed"


@dataclass(frozen=True)
class Template:
    """The kind of event a notification is about."""

    id: uuid.UUID
    name: str


TEMPLATE_WORKSPACE_DELETED = Template(
    id=uuid.UUID("f517da0b-cdc9-410f-ab89-a86107c420ed"),
    name="Workspace Deleted",
)


@dataclass(frozen=True)
class Message:
    """Snapshot of a leased notification row.

    Learn: Notifiers never touch ORM objects. The store hands out these
    snapshots, and the lease_token is what the notifier must present
    back to finalize the message.
    """

    id: uuid.UUID
    recipient: str
    template_id: uuid.UUID
    notification_name: str
    method: str
    labels: Labels
    title: str
    attempt_count: int
    lease_token: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Payload:
    """Everything a dispatcher gets for one delivery."""

    notification_name: str
    recipient: str
    title: str
    labels: Labels = field(default_factory=Labels)
