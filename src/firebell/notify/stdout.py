"""Terminal notifier."""

from __future__ import annotations

import sys
from typing import TextIO

from .models import Notification


class StdoutNotifier:
    """Prints notifications to standard output.

    Output format::

        [15:04:05] Claude Code | Cooling
          No activity detected for quiet period
    """

    def __init__(self, stream: TextIO | None = None):
        self._stream = stream

    @property
    def name(self) -> str:
        return "stdout"

    async def send(self, notification: Notification) -> None:
        stream = self._stream or sys.stdout
        timestamp = notification.time.strftime("%H:%M:%S")

        lines = []
        if notification.agent:
            lines.append(f"[{timestamp}] {notification.agent} | {notification.title}")
        else:
            lines.append(f"[{timestamp}] {notification.title}")

        if notification.message:
            lines.append(f"  {notification.message}")

        if notification.snippet:
            lines.append("  ---")
            lines.extend(f"  {line}" for line in notification.snippet.splitlines())
            lines.append("  ---")

        stream.write("\n".join(lines) + "\n\n")
        stream.flush()
