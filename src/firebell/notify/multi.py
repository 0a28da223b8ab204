"""Fan-out notifier."""

from __future__ import annotations

import logging

from ..errors import NotificationError
from .base import Notifier
from .models import Notification

logger = logging.getLogger(__name__)


class MultiNotifier:
    """Sends each notification to a primary and several secondary notifiers.

    The primary must succeed. Secondary notifiers are best effort: their
    errors are logged and never reported to the caller.
    """

    def __init__(self, primary: Notifier, *secondary: Notifier):
        self.primary = primary
        self.secondary = list(secondary)

    @property
    def name(self) -> str:
        return "+".join([self.primary.name] + [n.name for n in self.secondary])

    async def send(self, notification: Notification) -> None:
        try:
            await self.primary.send(notification)
        except NotificationError as e:
            raise NotificationError(f"primary notifier ({self.primary.name}) failed: {e}") from e

        for notifier in self.secondary:
            try:
                await notifier.send(notification)
            except NotificationError as e:
                logger.warning(f"Secondary notifier {notifier.name} failed: {e}")

    def close(self) -> None:
        """Close every notifier that has a ``close`` method."""
        for notifier in [self.primary, *self.secondary]:
            close = getattr(notifier, "close", None)
            if callable(close):
                try:
                    close()
                except OSError as e:
                    logger.warning(f"Failed to close notifier {notifier.name}: {e}")
