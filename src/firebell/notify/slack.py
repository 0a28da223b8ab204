"""Slack incoming-webhook notifier."""

from __future__ import annotations

import logging

import httpx

from ..errors import NotificationError
from .base import format_notification
from .models import Notification

logger = logging.getLogger(__name__)

SLACK_TIMEOUT_SECONDS = 10.0


class SlackNotifier:
    """Posts notifications to a Slack incoming webhook."""

    def __init__(
        self,
        webhook_url: str,
        timeout: float = SLACK_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        verbosity: str = "normal",
        include_snippets: bool = True,
    ):
        self.webhook_url = webhook_url
        self.verbosity = verbosity
        self.include_snippets = include_snippets
        self.timeout = timeout
        self._transport = transport

    @property
    def name(self) -> str:
        return "slack"

    async def send(self, notification: Notification) -> None:
        payload = {"text": format_notification(notification, self.verbosity, self.include_snippets)}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.webhook_url, json=payload)
        except httpx.HTTPError as e:
            raise NotificationError(f"slack request failed: {e}") from e

        if response.status_code >= 300:
            raise NotificationError(f"slack returned status {response.status_code}")

        logger.debug(f"Sent '{notification.title}' to Slack")
