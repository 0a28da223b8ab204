"""Logging setup for firebell.

Configures the ``firebell`` logger with a human-readable console handler on
stderr and, optionally, a rotating JSON-lines file in the log directory.
Every module logs through ``logging.getLogger(__name__)`` and propagates to
this logger.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime
from pathlib import Path

LOGGER_NAME = "firebell"
LOG_FILE_NAME = "firebell.log"

_RESERVED_ATTRS = frozenset(
    [
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "exc_info",
        "exc_text",
        "stack_info",
        "asctime",
        "taskName",
        "extras",
    ]
)


class JsonExtraFilter(logging.Filter):
    """Collects ``extra=`` fields of a record into ``record.extras``."""

    def filter(self, record):
        extras = {}
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            try:
                json.dumps(value)  # Ensure serializable
                extras[key] = value
            except (TypeError, ValueError):
                extras[key] = str(value)
        record.extras = extras
        return True


class JsonLineFormatter(logging.Formatter):
    """Formats records as one JSON object per line."""

    def format(self, record):
        log_obj = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        log_obj.update(getattr(record, "extras", {}))
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_obj)


class LoggingManager:
    """Manages the firebell logger and its handlers."""

    def __init__(
        self,
        log_dir: str | Path = "~/.firebell/logs",
        log_level: str = "INFO",
        file_logging: bool = False,
    ):
        """Initialize logging manager.

        Args:
            log_dir: Directory for the rotating log file
            log_level: Console log level name
            file_logging: Whether to also write JSON lines to a file
        """
        self.log_dir = Path(log_dir).expanduser()
        self.log_level = getattr(logging, log_level.upper())
        self.file_logging = file_logging
        self.log_file: Path | None = None

        self.logger = self._setup_logger()

        # Child loggers created before setup may carry their own handlers
        for name in list(logging.Logger.manager.loggerDict.keys()):
            if name.startswith(LOGGER_NAME + "."):
                child_logger = logging.getLogger(name)
                if isinstance(child_logger, logging.Logger):  # Skip PlaceHolders
                    child_logger.setLevel(logging.NOTSET)
                    child_logger.propagate = True
                    child_logger.handlers.clear()

    def _setup_logger(self) -> logging.Logger:
        """Setup the firebell logger with console and optional file handlers."""
        logger = logging.getLogger(LOGGER_NAME)
        logger.setLevel(logging.DEBUG if self.file_logging else self.log_level)
        logger.propagate = False

        for handler in list(logger.handlers):
            handler.close()
        logger.handlers.clear()

        # Console handler - human readable
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(console_handler)

        if self.file_logging:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self.log_file = self.log_dir / LOG_FILE_NAME

            # File handler - structured JSON
            file_handler = logging.handlers.RotatingFileHandler(
                self.log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
            )
            file_handler.setLevel(logging.DEBUG)  # Capture everything to file
            file_handler.addFilter(JsonExtraFilter())
            file_handler.setFormatter(JsonLineFormatter())
            logger.addHandler(file_handler)

        return logger

    def shutdown(self):
        """Flush and close all handlers."""
        for handler in list(self.logger.handlers):
            handler.flush()
            handler.close()
        self.logger.handlers.clear()
