"""JSON-lines event file for external integrations.

Each notification is appended as one :class:`Event` per line. When the
file reaches its size limit it is renamed to ``<path>.<YYYY-mm-dd-HHMMSS>``
and a fresh file is started.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import TextIO

from ..errors import NotificationError
from .models import FIREBELL_AGENT, Event, EventType, Notification

logger = logging.getLogger(__name__)

DEFAULT_EVENT_FILE = "~/.firebell/events.jsonl"
DEFAULT_MAX_SIZE = 10 * 1024 * 1024  # 10MB


class EventFileNotifier:
    """Appends events to a JSONL file with size-based rotation."""

    def __init__(self, path: str | Path | None = None, max_size: int = 0):
        """Initialize event file notifier.

        Args:
            path: Event file path (default ``~/.firebell/events.jsonl``).
            max_size: Rotation threshold in bytes (0 means 10MB).

        Raises:
            NotificationError: If the parent directory cannot be created.
        """
        self.path = Path(path or DEFAULT_EVENT_FILE).expanduser()
        self.max_size = max_size if max_size > 0 else DEFAULT_MAX_SIZE
        self._file: TextIO | None = None
        self._lock = threading.Lock()

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise NotificationError(f"failed to create directory {self.path.parent}: {e}") from e

    @property
    def name(self) -> str:
        return "eventfile"

    async def send(self, notification: Notification) -> None:
        self.write_event(Event.from_notification(notification))

    def write_event(self, event: Event) -> None:
        """Append one event, rotating the file first when it is full.

        Raises:
            NotificationError: If the file cannot be rotated or written.
        """
        with self._lock:
            try:
                self._maybe_rotate()
                if self._file is None:
                    fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
                    self._file = os.fdopen(fd, "a", encoding="utf-8")
                self._file.write(event.to_json() + "\n")
                self._file.flush()
                os.fsync(self._file.fileno())
            except OSError as e:
                raise NotificationError(f"failed to write event: {e}") from e

    def _maybe_rotate(self) -> None:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return

        if size < self.max_size:
            return

        if self._file is not None:
            self._file.close()
            self._file = None

        rotated = Path(f"{self.path}.{datetime.now().strftime('%Y-%m-%d-%H%M%S')}")
        os.replace(self.path, rotated)
        logger.info(f"Rotated event file to {rotated}")

    def emit_daemon_start(self) -> None:
        self.write_event(
            Event(event=EventType.DAEMON_START, agent=FIREBELL_AGENT, message="Firebell daemon started")
        )

    def emit_daemon_stop(self) -> None:
        self.write_event(
            Event(event=EventType.DAEMON_STOP, agent=FIREBELL_AGENT, message="Firebell daemon stopping")
        )

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None


def read_events(path: str | Path | None = None, limit: int = 0) -> list[Event]:
    """Read events from an event file, oldest first.

    Malformed lines are skipped.

    Args:
        path: Event file path (default ``~/.firebell/events.jsonl``).
        limit: Return only the last ``limit`` events (0 means all).
    """
    resolved = Path(path or DEFAULT_EVENT_FILE).expanduser()
    events: list[Event] = []
    try:
        with open(resolved, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(Event.from_dict(json.loads(line)))
                except (ValueError, TypeError, AttributeError) as e:
                    logger.debug(f"Skipping malformed event line: {e}")
    except FileNotFoundError:
        return []

    if limit > 0:
        events = events[-limit:]
    return events


def count_by_type(events: list[Event]) -> dict[str, int]:
    """Count events per event type."""
    return dict(Counter(event.event.value for event in events))
