"""Exception hierarchy for notification dispatch.

Learn: Only enqueue, registry construction and shutdown raise to callers.
Everything that goes wrong while delivering a message (unknown method,
missing labels, dispatcher failures) is turned into a message state by
the notifier instead.
"""

from typing import Sequence


class NotificationError(Exception):
    """Base exception for notification failures."""


class InvalidMessageError(NotificationError):
    """Raised at enqueue time when a message is structurally invalid."""


class UnknownMethodError(NotificationError):
    """Raised when no dispatcher is registered for a delivery method."""

    def __init__(self, method: str):
        self.method = method
        super().__init__(f"No dispatcher registered for method '{method}'")


class DuplicateMethodError(NotificationError):
    """Raised when two dispatchers claim the same delivery method."""

    def __init__(self, method: str):
        self.method = method
        super().__init__(f"A dispatcher for method '{method}' is already registered")


class RegistryFrozenError(NotificationError):
    """Raised when registering into a registry already in use."""


class ValidationError(NotificationError):
    """A message lacks labels its dispatcher requires. Never retried."""

    def __init__(self, method: str, missing: Sequence[str]):
        self.method = method
        self.missing = list(missing)
        super().__init__(
            f"Message is missing labels required by '{method}': {', '.join(self.missing)}"
        )


class DispatchError(NotificationError):
    """Raised by dispatchers when a Send fails.

    The dispatcher decides whether the failure is worth retrying; the
    notifier never infers it.
    """

    def __init__(self, message: str, *, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class ManagerStateError(NotificationError):
    """Raised when the manager lifecycle is driven out of order."""


class ShutdownTimeoutError(NotificationError):
    """Raised when notifiers don't drain before the stop deadline."""
