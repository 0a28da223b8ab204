"""Notification delivery: stdout, Slack, webhooks and the event file."""

from .base import Notifier, format_notification, truncate
from .eventfile import EventFileNotifier, count_by_type, read_events
from .factory import create_notifier, create_primary_notifier, find_event_file
from .models import (
    Event,
    EventType,
    Notification,
    activity_notification,
    awaiting_notification,
    determine_event_type,
    holding_notification,
    process_exit_notification,
    process_idle_notification,
    quiet_notification,
)
from .multi import MultiNotifier
from .slack import SlackNotifier
from .stdout import StdoutNotifier
from .webhook import WebhookNotifier, test_webhook

__all__ = [
    "Event",
    "EventFileNotifier",
    "EventType",
    "MultiNotifier",
    "Notification",
    "Notifier",
    "SlackNotifier",
    "StdoutNotifier",
    "WebhookNotifier",
    "activity_notification",
    "awaiting_notification",
    "count_by_type",
    "create_notifier",
    "create_primary_notifier",
    "determine_event_type",
    "find_event_file",
    "format_notification",
    "holding_notification",
    "process_exit_notification",
    "process_idle_notification",
    "quiet_notification",
    "read_events",
    "test_webhook",
    "truncate",
]
