"""Tests for process sampling and idle detection."""

import asyncio
import os
from unittest.mock import MagicMock

import psutil
import pytest

from firebell.monitoring import process_monitor
from firebell.monitoring.models import ProcSample
from firebell.monitoring.process_monitor import (
    ProcessMonitor,
    detect_pid,
    format_proc_meta,
    human_bytes,
    pid_alive,
    read_proc_sample,
    watch_pid,
)


@pytest.fixture
def single_core(monkeypatch):
    monkeypatch.setattr(process_monitor.psutil, "cpu_count", lambda: 1)


class TestProcessHelpers:
    """Tests for psutil-backed helpers on the test process itself."""

    def test_read_proc_sample_of_self(self) -> None:
        sample = read_proc_sample(os.getpid())

        assert sample.cpu_seconds >= 0
        assert sample.rss_bytes > 0
        assert sample.state in {"R", "S", "D", "Z", "T", "I", "?"}

    def test_read_proc_sample_of_missing_process(self) -> None:
        with pytest.raises(psutil.Error):
            read_proc_sample(2**22 + 12345)

    def test_pid_alive(self) -> None:
        assert pid_alive(os.getpid())
        assert not pid_alive(0)
        assert not pid_alive(-5)

    def test_detect_pid_never_returns_self(self) -> None:
        assert detect_pid([]) == 0
        assert detect_pid(["firebell-no-such-process-xyz"]) == 0

    def test_human_bytes(self) -> None:
        assert human_bytes(512) == "512B"
        assert human_bytes(1536) == "1.5KiB"
        assert human_bytes(5 * 1024 * 1024) == "5.0MiB"

    def test_format_proc_meta(self) -> None:
        sample = ProcSample(cpu_seconds=0, wall=0, rss_bytes=2048, vms_bytes=1024 * 1024, state="S")

        assert format_proc_meta(sample) == " (RSS=2.0KiB VSZ=1.0MiB STAT=S)"
        assert format_proc_meta(None) == ""


class TestProcessMonitorSampling:
    """Tests for CPU percentage computation."""

    def _monitor(self, samples, clock) -> ProcessMonitor:
        sampler = MagicMock(side_effect=samples)
        monitor = ProcessMonitor(["agent"], sampler=sampler, clock=clock)
        monitor.set_pid(os.getpid())
        return monitor

    def test_first_sample_has_no_cpu(self, clock, single_core) -> None:
        monitor = self._monitor([ProcSample(cpu_seconds=1.0, wall=100.0)], clock)

        assert monitor.sample() == -1.0
        assert monitor.last_sample.cpu_seconds == 1.0
        assert monitor.last_cpu == -1.0

    def test_cpu_from_successive_samples(self, clock, single_core) -> None:
        monitor = self._monitor(
            [ProcSample(cpu_seconds=1.0, wall=100.0), ProcSample(cpu_seconds=1.5, wall=102.0)],
            clock,
        )

        monitor.sample()
        assert monitor.sample() == pytest.approx(25.0)
        assert monitor.last_cpu == pytest.approx(25.0)

    def test_cpu_is_divided_by_core_count(self, clock, monkeypatch) -> None:
        monkeypatch.setattr(process_monitor.psutil, "cpu_count", lambda: 4)
        monitor = self._monitor(
            [ProcSample(cpu_seconds=0.0, wall=10.0), ProcSample(cpu_seconds=2.0, wall=11.0)],
            clock,
        )

        monitor.sample()
        assert monitor.sample() == pytest.approx(50.0)

    def test_non_increasing_wall_time(self, clock, single_core) -> None:
        monitor = self._monitor(
            [ProcSample(cpu_seconds=1.0, wall=100.0), ProcSample(cpu_seconds=2.0, wall=100.0)],
            clock,
        )

        monitor.sample()
        assert monitor.sample() == -1.0

    def test_sampling_error_returns_negative(self, clock, single_core) -> None:
        monitor = self._monitor([psutil.NoSuchProcess(os.getpid())], clock)

        assert monitor.sample() == -1.0

    def test_no_process_returns_negative(self, clock, monkeypatch) -> None:
        monkeypatch.setattr(process_monitor, "detect_pid", lambda candidates: 0)
        monitor = ProcessMonitor(["agent"], sampler=MagicMock(), clock=clock)

        assert monitor.sample() == -1.0
        monitor._sampler.assert_not_called()

    def test_pid_change_discards_previous_sample(self, clock, single_core) -> None:
        monitor = self._monitor(
            [ProcSample(cpu_seconds=1.0, wall=100.0), ProcSample(cpu_seconds=50.0, wall=101.0)],
            clock,
        )
        monitor.sample()

        monitor.set_pid(os.getppid())

        assert monitor.last_sample is None
        assert monitor.sample() == -1.0


class TestProcessMonitorDetection:
    """Tests for PID detection caching."""

    def test_detection_cooldown(self, clock, monkeypatch) -> None:
        detect = MagicMock(return_value=0)
        monkeypatch.setattr(process_monitor, "detect_pid", detect)
        monitor = ProcessMonitor(["agent"], detect_cooldown=10, clock=clock)

        assert monitor.get_pid() == 0
        assert monitor.get_pid() == 0
        assert detect.call_count == 1

        clock.advance(10)
        detect.return_value = os.getpid()
        assert monitor.get_pid() == os.getpid()
        assert detect.call_count == 2

    def test_live_cached_pid_skips_detection(self, clock, monkeypatch) -> None:
        detect = MagicMock(return_value=os.getpid())
        monkeypatch.setattr(process_monitor, "detect_pid", detect)
        monitor = ProcessMonitor(["agent"], clock=clock)

        monitor.get_pid()
        clock.advance(60)
        monitor.get_pid()

        assert detect.call_count == 1


class TestIdleDetection:
    """Tests for idle episodes."""

    def test_idle_fires_once_after_duration(self, clock) -> None:
        monitor = ProcessMonitor(["agent"], clock=clock)
        monitor._last_cpu = 0.2

        assert not monitor.check_idle(1.0, 60)
        clock.advance(59)
        assert not monitor.check_idle(1.0, 60)
        clock.advance(1)
        assert monitor.check_idle(1.0, 60)
        clock.advance(120)
        assert not monitor.check_idle(1.0, 60)

    def test_busy_cpu_ends_episode(self, clock) -> None:
        monitor = ProcessMonitor(["agent"], clock=clock)
        monitor._last_cpu = 0.2
        monitor.check_idle(1.0, 10)
        clock.advance(10)
        assert monitor.check_idle(1.0, 10)

        monitor._last_cpu = 30.0
        assert not monitor.check_idle(1.0, 10)

        monitor._last_cpu = 0.1
        monitor.check_idle(1.0, 10)
        clock.advance(10)
        assert monitor.check_idle(1.0, 10)

    def test_no_cpu_reading_never_idle(self, clock) -> None:
        monitor = ProcessMonitor(["agent"], clock=clock)
        clock.advance(1000)

        assert not monitor.check_idle(1.0, 0)


class TestWatchPid:
    @pytest.mark.asyncio
    async def test_returns_when_process_exits(self) -> None:
        states = iter([True, True, False])

        pid = await asyncio.wait_for(watch_pid(4242, interval=0, alive=lambda _: next(states)), 1)

        assert pid == 4242
