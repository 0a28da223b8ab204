"""Exception hierarchy for firebell."""

from __future__ import annotations


class FirebellError(Exception):
    """Base class for all firebell errors."""


class ConfigError(FirebellError):
    """Raised when a configuration value is invalid.

    Attributes:
        field: Dotted path of the offending field (e.g. "notify.type").
        message: Human-readable reason.
    """

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"config validation error: {field}: {message}")


class WatcherError(FirebellError):
    """Raised when the watcher cannot be started at all."""


class NotificationError(FirebellError):
    """Raised by a notifier when delivery fails."""
