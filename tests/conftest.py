"""Shared fixtures for firebell tests."""

from pathlib import Path

import pytest

from firebell.config import Config
from firebell.errors import NotificationError
from firebell.notify.models import Notification


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    """Notifier that keeps every notification it receives."""

    def __init__(self, name: str = "recording", fail: bool = False):
        self._name = name
        self.fail = fail
        self.sent: list[Notification] = []
        self.closed = False

    @property
    def name(self) -> str:
        return self._name

    async def send(self, notification: Notification) -> None:
        if self.fail:
            raise NotificationError(f"{self._name} is down")
        self.sent.append(notification)

    def close(self) -> None:
        self.closed = True

    @property
    def titles(self) -> list[str]:
        return [n.title for n in self.sent]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Stdout configuration with side channels pointed into tmp_path."""
    cfg = Config()
    cfg.notify.type = "stdout"
    cfg.events.event_file = False
    cfg.events.event_file_path = str(tmp_path / "events.jsonl")
    cfg.logging.log_dir = str(tmp_path / "logs")
    cfg.monitor.process_tracking = False
    cfg.monitor.per_instance = False
    return cfg


@pytest.fixture
def make_notifier():
    """Factory for additional recording notifiers."""
    return RecordingNotifier
