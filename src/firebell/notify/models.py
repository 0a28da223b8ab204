"""Notification and event models.

A :class:`Notification` is what the monitoring core produces. An
:class:`Event` is its wire form, shared by webhooks and the event file.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

TITLE_ACTIVITY = "Activity Detected"
TITLE_COOLING = "Cooling"
TITLE_AWAITING = "Awaiting"
TITLE_HOLDING = "Holding"
TITLE_PROCESS_EXITED = "Process Exited"
TITLE_PROCESS_IDLE = "Process Idle"
TITLE_TEST = "Test Notification"

FIREBELL_AGENT = "firebell"


class EventType(str, Enum):
    """Kinds of events delivered to integrations."""

    ACTIVITY = "activity"
    COOLING = "cooling"
    AWAITING = "awaiting"
    HOLDING = "holding"
    PROCESS_EXIT = "process_exit"
    PROCESS_IDLE = "process_idle"
    DAEMON_START = "daemon_start"
    DAEMON_STOP = "daemon_stop"
    TEST = "test"


@dataclass
class Notification:
    """A message for the user.

    Attributes:
        title: Short header, e.g. "Cooling".
        agent: Display name of the agent or session.
        message: Body text.
        snippet: Optional log context.
        time: Creation time.
    """

    title: str
    agent: str = ""
    message: str = ""
    snippet: str = ""
    time: datetime = field(default_factory=datetime.now)


_TITLE_EVENTS = {
    TITLE_COOLING: EventType.COOLING,
    "Likely Finished": EventType.COOLING,
    TITLE_AWAITING: EventType.AWAITING,
    TITLE_HOLDING: EventType.HOLDING,
    TITLE_PROCESS_EXITED: EventType.PROCESS_EXIT,
    "Process Exit": EventType.PROCESS_EXIT,
    TITLE_PROCESS_IDLE: EventType.PROCESS_IDLE,
    TITLE_TEST: EventType.TEST,
}


def determine_event_type(notification: Notification) -> EventType:
    """Infer the event type from a notification's title."""
    return _TITLE_EVENTS.get(notification.title, EventType.ACTIVITY)


@dataclass
class Event:
    """Unified event record for webhooks and the event file.

    Empty optional fields are omitted from the serialized form.
    """

    event: EventType
    timestamp: datetime = field(default_factory=datetime.now)
    agent: str = ""
    title: str = ""
    message: str = ""
    snippet: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_notification(
        cls, notification: Notification, event_type: EventType | None = None
    ) -> Event:
        return cls(
            event=event_type or determine_event_type(notification),
            timestamp=notification.time,
            agent=notification.agent,
            title=notification.title,
            message=notification.message,
            snippet=notification.snippet,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Event:
        """Rebuild an event from its serialized form.

        Raises:
            ValueError: If the event type or timestamp is invalid.
        """
        timestamp = data.get("timestamp")
        return cls(
            event=EventType(data.get("event", "")),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else datetime.now(),
            agent=data.get("agent", ""),
            title=data.get("title", ""),
            message=data.get("message", ""),
            snippet=data.get("snippet", ""),
            metadata=dict(data.get("metadata") or {}),
        )

    def with_metadata(self, key: str, value: Any) -> Event:
        self.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "event": self.event.value,
            "timestamp": self.timestamp.astimezone().isoformat(),
        }
        for key in ("agent", "title", "message", "snippet"):
            value = getattr(self, key)
            if value:
                data[key] = value
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def activity_notification(display_name: str, reason: str, snippet: str = "") -> Notification:
    return Notification(title=TITLE_ACTIVITY, agent=display_name, message=reason, snippet=snippet)


def quiet_notification(display_name: str, cpu_pct: float = -1.0) -> Notification:
    """The agent finished and has been silent for the quiet period."""
    message = "No activity detected for quiet period"
    if cpu_pct >= 0:
        message = f"No activity detected (CPU: {cpu_pct:.1f}%)"
    return Notification(title=TITLE_COOLING, agent=display_name, message=message)


def awaiting_notification(
    display_name: str, message: str = "No activity detected (may be waiting for input)"
) -> Notification:
    return Notification(title=TITLE_AWAITING, agent=display_name, message=message)


def holding_notification(
    display_name: str, tool: str | None = None, message: str | None = None
) -> Notification:
    if message is None:
        message = f"Tool: {tool or 'unknown'}"
    return Notification(title=TITLE_HOLDING, agent=display_name, message=message)


def process_exit_notification(pid: int) -> Notification:
    return Notification(
        title=TITLE_PROCESS_EXITED,
        agent=FIREBELL_AGENT,
        message=f"Monitored process (PID {pid}) has terminated",
    )


def process_idle_notification(
    pid: int, cpu_pct: float, idle_seconds: float, proc_meta: str = ""
) -> Notification:
    return Notification(
        title=TITLE_PROCESS_IDLE,
        agent=FIREBELL_AGENT,
        message=(
            f"Monitored process (PID {pid}) idle for {idle_seconds:.0f}s "
            f"(CPU: {cpu_pct:.1f}%){proc_meta}"
        ),
    )
