"""Built-in dispatchers.

Learn: A dispatcher is registered under its name() in a DispatcherRegistry.
To add a delivery method, subclass Dispatcher and pass an instance to
DispatcherRegistry(...) when building the Manager.
"""

from herald.notifications.dispatch.base import Dispatcher
from herald.notifications.dispatch.smtp import SMTPDispatcher
from herald.notifications.dispatch.webhook import WebhookDispatcher

__all__ = [
    "Dispatcher",
    "SMTPDispatcher",
    "WebhookDispatcher",
]
