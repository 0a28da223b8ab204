"""Generic HTTP webhook notifier.

Each configured endpoint receives the JSON :class:`Event` for every
notification that passes its event filter. Failed deliveries are retried
with exponential backoff; endpoints are independent of each other.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

import httpx

from .. import __version__
from ..config import WebhookConfig
from ..errors import NotificationError
from .models import FIREBELL_AGENT, TITLE_TEST, Event, EventType, Notification

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
MAX_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 1.0

USER_AGENT = f"firebell/{__version__}"


@dataclass
class WebhookEndpoint:
    url: str
    events: frozenset[str] = field(default_factory=frozenset)
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float = DEFAULT_TIMEOUT_SECONDS

    def accepts(self, event_type: EventType) -> bool:
        """An empty filter, or one containing ``all``, accepts every event."""
        if not self.events or "all" in self.events:
            return True
        return event_type.value in self.events


def _request_headers(extra: dict[str, str]) -> dict[str, str]:
    headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
    headers.update(extra)
    return headers


class WebhookNotifier:
    """Sends JSON events to a set of webhook endpoints."""

    def __init__(
        self,
        configs: Iterable[WebhookConfig],
        transport: httpx.AsyncBaseTransport | None = None,
        backoff_base: float = BACKOFF_BASE_SECONDS,
    ):
        """Initialize webhook notifier.

        Args:
            configs: Endpoint configurations; entries without a URL are skipped.
            transport: Optional httpx transport.
            backoff_base: Delay before the first retry; doubles per attempt.
        """
        self.endpoints = [
            WebhookEndpoint(
                url=cfg.url,
                events=frozenset(cfg.events),
                headers=dict(cfg.headers),
                timeout=cfg.timeout if cfg.timeout > 0 else DEFAULT_TIMEOUT_SECONDS,
            )
            for cfg in configs
            if cfg.url
        ]
        self._transport = transport
        self.backoff_base = backoff_base

    @property
    def name(self) -> str:
        return "webhook"

    @property
    def endpoint_count(self) -> int:
        return len(self.endpoints)

    async def send(self, notification: Notification) -> None:
        await self.send_event(Event.from_notification(notification))

    async def send_event(self, event: Event) -> None:
        """Deliver ``event`` to every endpoint whose filter accepts it.

        Raises:
            NotificationError: If any endpoint failed after all retries.
        """
        last_error: NotificationError | None = None
        for endpoint in self.endpoints:
            if not endpoint.accepts(event.event):
                continue
            try:
                await self._send_to_endpoint(endpoint, event)
            except NotificationError as e:
                logger.warning(f"Webhook {endpoint.url} failed: {e}")
                last_error = e

        if last_error is not None:
            raise last_error

    async def _send_to_endpoint(self, endpoint: WebhookEndpoint, event: Event) -> None:
        payload = event.to_dict()
        last_error: Exception | None = None

        for attempt in range(MAX_ATTEMPTS):
            if attempt > 0:
                await asyncio.sleep(self.backoff_base * (2 ** (attempt - 1)))
            try:
                await self._post(endpoint, payload)
                return
            except (httpx.HTTPError, NotificationError) as e:
                logger.debug(f"Webhook attempt {attempt + 1} to {endpoint.url} failed: {e}")
                last_error = e

        raise NotificationError(f"webhook failed after {MAX_ATTEMPTS} attempts: {last_error}")

    async def _post(self, endpoint: WebhookEndpoint, payload: dict) -> None:
        async with httpx.AsyncClient(timeout=endpoint.timeout, transport=self._transport) as client:
            response = await client.post(
                endpoint.url, json=payload, headers=_request_headers(endpoint.headers)
            )
        if response.status_code >= 400:
            raise NotificationError(f"webhook returned status {response.status_code}")


async def test_webhook(
    url: str,
    headers: dict[str, str] | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """Post a single test event to ``url``.

    Raises:
        NotificationError: If the request fails or returns status >= 400.
    """
    event = Event(
        event=EventType.TEST,
        agent=FIREBELL_AGENT,
        title=TITLE_TEST,
        message="Webhook configuration is working!",
    )

    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.post(
                url, json=event.to_dict(), headers=_request_headers(headers or {})
            )
    except httpx.HTTPError as e:
        raise NotificationError(f"request failed: {e}") from e

    if response.status_code >= 400:
        raise NotificationError(f"webhook returned status {response.status_code}")


# Not a test function
test_webhook.__test__ = False  # type: ignore[attr-defined]
