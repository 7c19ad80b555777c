"""Dispatcher base — pluggable interface for delivery methods.

Learn: Herald doesn't know how to deliver anything itself. Each delivery
method (smtp, webhook, ...) is a Dispatcher that knows how to:
1. Name the method it serves (the registry key)
2. Check a message's labels before sending — pure, no I/O
3. Deliver one message, raising DispatchError on failure

Whether a failure deserves another attempt is the dispatcher's call,
expressed through DispatchError(retryable=...). Any other exception
escaping send() is treated as permanent.
"""

import uuid
from abc import ABC, abstractmethod

from herald.notifications.types import Labels, Payload


class Dispatcher(ABC):
    """Abstract base for delivery method implementations."""

    # Labels that must be present for validate() to pass.
    required_labels: tuple[str, ...] = ()

    @property
    @abstractmethod
    def name(self) -> str:
        """Delivery method identifier, e.g. 'smtp', 'webhook'."""

    def validate(self, labels: Labels) -> tuple[bool, list[str]]:
        """Return (ok, missing_label_keys)."""
        missing = labels.missing(*self.required_labels)
        return not missing, missing

    @abstractmethod
    async def send(self, message_id: uuid.UUID, payload: Payload) -> None:
        """Deliver one message.

        Must:
        - Raise DispatchError(retryable=True) for transient failures
        - Raise DispatchError(retryable=False) for misconfiguration or
          rejections that won't change on retry
        - Stay cancellable: the notifier bounds every call with a timeout
        """
