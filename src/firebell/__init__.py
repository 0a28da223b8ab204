"""firebell - activity notifications for AI coding-assistant CLIs."""

from .errors import ConfigError, FirebellError, NotificationError, WatcherError

__version__ = "2.0.0"

__all__ = [
    "ConfigError",
    "FirebellError",
    "NotificationError",
    "WatcherError",
    "__version__",
]
