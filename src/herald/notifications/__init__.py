"""Notification dispatch — durable enqueue, lease, dispatch, retry.

Learn: Components, leaves first:
- Labels / Template / Message      (types)
- Dispatcher + DispatcherRegistry  (dispatch, registry)
- NotificationStore                (store) — the only shared mutable state
- WakeChannel                      (wake)  — cuts pickup latency
- Notifier                         (notifier) — one concurrent worker
- Manager                          (manager) — enqueue + notifier lifecycle
"""

from herald.notifications.dispatch import Dispatcher, SMTPDispatcher, WebhookDispatcher
from herald.notifications.exceptions import (
    DispatchError,
    DuplicateMethodError,
    InvalidMessageError,
    ManagerStateError,
    NotificationError,
    RegistryFrozenError,
    ShutdownTimeoutError,
    UnknownMethodError,
    ValidationError,
)
from herald.notifications.manager import Manager
from herald.notifications.notifier import Notifier
from herald.notifications.registry import DispatcherRegistry, default_registry
from herald.notifications.store import NotificationStore
from herald.notifications.types import (
    TEMPLATE_WORKSPACE_DELETED,
    Labels,
    Message,
    MessageStatus,
    NotificationMethod,
    Outcome,
    Payload,
    Template,
)
from herald.notifications.wake import (
    MemoryWakeChannel,
    PostgresWakeChannel,
    RedisWakeChannel,
    WakeChannel,
)

__all__ = [
    "Dispatcher",
    "DispatcherRegistry",
    "DispatchError",
    "DuplicateMethodError",
    "InvalidMessageError",
    "Labels",
    "Manager",
    "ManagerStateError",
    "MemoryWakeChannel",
    "Message",
    "MessageStatus",
    "NotificationError",
    "NotificationMethod",
    "NotificationStore",
    "Notifier",
    "Outcome",
    "Payload",
    "PostgresWakeChannel",
    "RedisWakeChannel",
    "RegistryFrozenError",
    "SMTPDispatcher",
    "ShutdownTimeoutError",
    "TEMPLATE_WORKSPACE_DELETED",
    "Template",
    "UnknownMethodError",
    "ValidationError",
    "WakeChannel",
    "WebhookDispatcher",
    "default_registry",
]
