"""Tests for the generic webhook notifier."""

import json

import httpx
import pytest

from firebell import __version__
from firebell.config import WebhookConfig
from firebell.errors import NotificationError
from firebell.notify.models import Event, EventType, holding_notification, quiet_notification
from firebell.notify.webhook import WebhookEndpoint, WebhookNotifier, test_webhook


class Recorder:
    """Mock transport handler that records requests and replays statuses."""

    def __init__(self, *statuses: int):
        self.statuses = list(statuses) or [200]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(status)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


class TestWebhookEndpoint:
    def test_event_filter(self) -> None:
        assert WebhookEndpoint(url="u").accepts(EventType.ACTIVITY)
        assert WebhookEndpoint(url="u", events=frozenset({"all"})).accepts(EventType.HOLDING)

        endpoint = WebhookEndpoint(url="u", events=frozenset({"cooling", "holding"}))
        assert endpoint.accepts(EventType.HOLDING)
        assert not endpoint.accepts(EventType.ACTIVITY)


class TestWebhookNotifier:
    """Tests for delivery, filtering and retries."""

    @pytest.mark.asyncio
    async def test_sends_event_json_with_headers(self) -> None:
        recorder = Recorder()
        notifier = WebhookNotifier(
            [WebhookConfig(url="https://example.test/hook", headers={"X-Token": "abc"})],
            transport=recorder.transport,
        )

        await notifier.send(holding_notification("Claude Code", "Bash"))

        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.headers["X-Token"] == "abc"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["User-Agent"] == f"firebell/{__version__}"
        payload = recorder.payloads()[0]
        assert payload["event"] == "holding"
        assert payload["agent"] == "Claude Code"
        assert payload["message"] == "Tool: Bash"

    @pytest.mark.asyncio
    async def test_filtered_endpoints_are_skipped(self) -> None:
        recorder = Recorder()
        notifier = WebhookNotifier(
            [
                WebhookConfig(url="https://a.test", events=["cooling"]),
                WebhookConfig(url="https://b.test", events=["holding"]),
            ],
            transport=recorder.transport,
        )

        await notifier.send(quiet_notification("Codex"))

        assert [r.url.host for r in recorder.requests] == ["a.test"]

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self) -> None:
        recorder = Recorder(500, 502, 200)
        notifier = WebhookNotifier(
            [WebhookConfig(url="https://a.test")], transport=recorder.transport, backoff_base=0
        )

        await notifier.send(quiet_notification("Codex"))

        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self) -> None:
        recorder = Recorder(503)
        notifier = WebhookNotifier(
            [WebhookConfig(url="https://a.test")], transport=recorder.transport, backoff_base=0
        )

        with pytest.raises(NotificationError, match="after 3 attempts"):
            await notifier.send(quiet_notification("Codex"))
        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_failing_endpoint_does_not_block_others(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "down.test":
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(204)

        seen = []

        def recording_handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.host)
            return handler(request)

        notifier = WebhookNotifier(
            [WebhookConfig(url="https://down.test"), WebhookConfig(url="https://up.test")],
            transport=httpx.MockTransport(recording_handler),
            backoff_base=0,
        )

        with pytest.raises(NotificationError):
            await notifier.send_event(Event(event=EventType.TEST))
        assert seen.count("up.test") == 1
        assert seen.count("down.test") == 3

    def test_endpoints_without_url_are_dropped(self) -> None:
        notifier = WebhookNotifier([WebhookConfig(url=""), WebhookConfig(url="https://a.test", timeout=0)])

        assert notifier.endpoint_count == 1
        assert notifier.endpoints[0].timeout == 10.0


class TestTestWebhook:
    @pytest.mark.asyncio
    async def test_sends_test_event(self) -> None:
        recorder = Recorder()

        await test_webhook("https://a.test", headers={"Authorization": "Bearer t"}, transport=recorder.transport)

        payload = recorder.payloads()[0]
        assert payload["event"] == "test"
        assert payload["title"] == "Test Notification"
        assert recorder.requests[0].headers["Authorization"] == "Bearer t"

    @pytest.mark.asyncio
    async def test_error_status(self) -> None:
        with pytest.raises(NotificationError, match="500"):
            await test_webhook("https://a.test", transport=Recorder(500).transport)
