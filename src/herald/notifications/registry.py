"""Dispatcher registry — delivery method → dispatcher instance.

Learn: The registry is built once at startup and handed to the Manager,
which freezes it. After that it's read-only and shared by every notifier,
so no locking is needed. There is no process-wide default registry: each
Manager owns the one it was given.

    registry = DispatcherRegistry(SMTPDispatcher(cfg.smtp), MyPagerDispatcher())
    dispatcher = registry.resolve("smtp")
"""

from typing import Iterator

from herald.config import Settings
from herald.notifications.dispatch.base import Dispatcher
from herald.notifications.dispatch.smtp import SMTPDispatcher
from herald.notifications.dispatch.webhook import WebhookDispatcher
from herald.notifications.exceptions import (
    DuplicateMethodError,
    RegistryFrozenError,
    UnknownMethodError,
)


class DispatcherRegistry:
    def __init__(self, *dispatchers: Dispatcher):
        self._dispatchers: dict[str, Dispatcher] = {}
        self._frozen = False
        for dispatcher in dispatchers:
            self.register(dispatcher)

    def register(self, dispatcher: Dispatcher) -> None:
        """Add a dispatcher. One per method; rejected once frozen."""
        if self._frozen:
            raise RegistryFrozenError(
                f"Cannot register '{dispatcher.name}': registry is already in use"
            )
        if dispatcher.name in self._dispatchers:
            raise DuplicateMethodError(dispatcher.name)
        self._dispatchers[dispatcher.name] = dispatcher

    def resolve(self, method: str) -> Dispatcher:
        """Get the dispatcher for a method.

        Raises UnknownMethodError if none is registered.
        """
        dispatcher = self._dispatchers.get(method)
        if dispatcher is None:
            raise UnknownMethodError(method)
        return dispatcher

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def methods(self) -> list[str]:
        """List registered method names."""
        return sorted(self._dispatchers.keys())

    def __contains__(self, method: object) -> bool:
        return method in self._dispatchers

    def __len__(self) -> int:
        return len(self._dispatchers)

    def __iter__(self) -> Iterator[Dispatcher]:
        return iter(self._dispatchers.values())


def default_registry(settings: Settings) -> DispatcherRegistry:
    """The built-in smtp + webhook dispatchers, configured from settings."""
    return DispatcherRegistry(
        SMTPDispatcher(settings.smtp),
        WebhookDispatcher(settings.webhook),
    )
