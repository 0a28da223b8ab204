"""Builds the notifier chain from configuration."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from ..config import Config
from ..errors import ConfigError, NotificationError
from .base import Notifier
from .eventfile import EventFileNotifier
from .multi import MultiNotifier
from .slack import SlackNotifier
from .stdout import StdoutNotifier
from .webhook import WebhookNotifier

logger = logging.getLogger(__name__)


def create_primary_notifier(config: Config) -> Notifier:
    """Create the primary notifier selected by ``notify.type``.

    Raises:
        ConfigError: If the type is unknown or Slack has no webhook.
    """
    notify_type = config.notify.type
    if notify_type == "slack":
        if not config.notify.slack.webhook:
            raise ConfigError("notify.slack.webhook", "Slack webhook URL is required")
        return SlackNotifier(
            config.notify.slack.webhook,
            verbosity=config.output.verbosity,
            include_snippets=config.output.include_snippets,
        )
    if notify_type == "stdout":
        return StdoutNotifier()
    raise ConfigError("notify.type", f"unknown notification type: {notify_type}")


def create_notifier(config: Config, extras: Sequence[Notifier] = ()) -> Notifier:
    """Create the notifier for a run.

    The primary notifier is combined with the event file (when enabled),
    the configured webhooks and any ``extras`` into a
    :class:`MultiNotifier`. Without secondaries the primary is returned
    as is.
    """
    primary = create_primary_notifier(config)
    secondary: list[Notifier] = []

    if config.events.event_file:
        try:
            secondary.append(
                EventFileNotifier(config.events.event_file_path, config.events.event_file_max_size)
            )
        except NotificationError as e:
            logger.warning(f"Event file disabled: {e}")

    if config.notify.webhooks:
        webhooks = WebhookNotifier(config.notify.webhooks)
        if webhooks.endpoint_count > 0:
            secondary.append(webhooks)

    secondary.extend(extras)

    if secondary:
        return MultiNotifier(primary, *secondary)
    return primary


def find_event_file(notifier: Notifier) -> EventFileNotifier | None:
    """Return the event file notifier inside ``notifier``, if any."""
    if isinstance(notifier, EventFileNotifier):
        return notifier
    if isinstance(notifier, MultiNotifier):
        for child in [notifier.primary, *notifier.secondary]:
            if isinstance(child, EventFileNotifier):
                return child
    return None
