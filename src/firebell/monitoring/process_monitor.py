"""CPU and memory sampling of the monitored CLI process.

Process data is a secondary signal: a CLI whose CPU usage stays below a
threshold for a while is most likely waiting for the user, and a vanished
process ends the session. Sampling uses psutil so it works on every
platform psutil supports.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Callable, Iterable

import psutil

from .models import ProcSample

logger = logging.getLogger(__name__)

# Minimum time between process table scans
DETECT_COOLDOWN_SECONDS = 10.0

# Interval of the exit watch
WATCH_INTERVAL_SECONDS = 5.0

_STATUS_LETTERS = {
    psutil.STATUS_RUNNING: "R",
    psutil.STATUS_SLEEPING: "S",
    psutil.STATUS_DISK_SLEEP: "D",
    psutil.STATUS_ZOMBIE: "Z",
    psutil.STATUS_STOPPED: "T",
    psutil.STATUS_TRACING_STOP: "T",
    psutil.STATUS_IDLE: "I",
}


def read_proc_sample(pid: int) -> ProcSample:
    """Take one resource sample of ``pid``.

    Raises:
        psutil.Error: If the process is gone or cannot be inspected.
    """
    proc = psutil.Process(pid)
    with proc.oneshot():
        times = proc.cpu_times()
        mem = proc.memory_info()
        status = proc.status()
    return ProcSample(
        cpu_seconds=times.user + times.system,
        wall=time.time(),
        rss_bytes=mem.rss,
        vms_bytes=mem.vms,
        state=_STATUS_LETTERS.get(status, "?"),
    )


def pid_alive(pid: int) -> bool:
    """Check whether ``pid`` refers to a running (non-zombie) process."""
    if pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def detect_pid(candidates: Iterable[str]) -> int:
    """Find the newest process whose command line contains a candidate name.

    The current process is never returned.

    Returns:
        The PID, or 0 when nothing matches.
    """
    names = [c for c in candidates if c]
    if not names:
        return 0

    own_pid = os.getpid()
    best_pid = 0
    best_created = -1.0

    for proc in psutil.process_iter(["pid", "name", "cmdline", "create_time"]):
        info = proc.info
        if info.get("pid") == own_pid:
            continue

        cmdline = info.get("cmdline") or []
        haystack = " ".join(cmdline) if cmdline else (info.get("name") or "")
        if not haystack or not any(name in haystack for name in names):
            continue

        created = info.get("create_time") or 0.0
        if created > best_created:
            best_pid = info["pid"]
            best_created = created

    return best_pid


class ProcessMonitor:
    """Tracks one CLI process and derives CPU usage from successive samples.

    The PID is discovered from the candidate process names and cached. The
    process table is scanned again only when the cached process died and
    the detection cooldown has elapsed.

    Attributes:
        candidates: Process name substrings to search for.
    """

    def __init__(
        self,
        candidates: Iterable[str],
        detect_cooldown: float = DETECT_COOLDOWN_SECONDS,
        sampler: Callable[[int], ProcSample] = read_proc_sample,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize process monitor.

        Args:
            candidates: Process name substrings to search for.
            detect_cooldown: Minimum seconds between process table scans.
            sampler: Function returning a sample for a PID.
            clock: Monotonic time source used for idle tracking.
        """
        self.candidates = list(candidates)
        self.detect_cooldown = detect_cooldown
        self._sampler = sampler
        self._clock = clock

        self._pid = 0
        self._cache_valid = False
        self._last_detect: float | None = None
        self._last_sample: ProcSample | None = None
        self._last_cpu = -1.0
        self._idle_since: float | None = None
        self._idle_notified = False

    @property
    def last_cpu(self) -> float:
        """Last computed CPU percentage, -1.0 when not yet available."""
        return self._last_cpu

    @property
    def last_sample(self) -> ProcSample | None:
        return self._last_sample

    def _adopt(self, pid: int) -> None:
        if pid != self._pid:
            self._last_sample = None
            self._last_cpu = -1.0
            self.reset_idle_state()
        self._pid = pid
        self._cache_valid = pid > 0

    def set_pid(self, pid: int) -> None:
        """Monitor ``pid`` explicitly, overriding auto-detection."""
        self._adopt(pid)

    def get_pid(self) -> int:
        """Return the monitored PID, detecting it when needed.

        Returns:
            The PID, or 0 when no candidate process is running.
        """
        if self._pid > 0 and self._cache_valid:
            if self.is_alive():
                return self._pid
            logger.debug(f"Monitored process {self._pid} is gone")
            self._cache_valid = False

        now = self._clock()
        if self._last_detect is not None and now - self._last_detect < self.detect_cooldown:
            return self._pid if self._cache_valid else 0

        self._last_detect = now
        pid = detect_pid(self.candidates)
        if pid > 0:
            if pid != self._pid:
                logger.info(f"Detected agent process PID {pid}")
            self._adopt(pid)
        else:
            self._cache_valid = False
        return pid

    def is_alive(self) -> bool:
        return pid_alive(self._pid)

    def sample(self) -> float:
        """Take a sample and return the CPU percentage.

        Returns:
            CPU usage as a percentage of all logical cores, or -1.0 when no
            process is tracked, sampling failed, or this is the first sample.
        """
        pid = self.get_pid()
        if pid <= 0:
            return -1.0

        try:
            sample = self._sampler(pid)
        except psutil.Error as e:
            logger.debug(f"Sampling PID {pid} failed: {e}")
            self._cache_valid = False
            return -1.0

        previous = self._last_sample
        self._last_sample = sample
        if previous is None:
            return -1.0

        elapsed = sample.wall - previous.wall
        if elapsed <= 0:
            return -1.0

        cpu_delta = sample.cpu_seconds - previous.cpu_seconds
        cores = psutil.cpu_count() or 1
        self._last_cpu = (cpu_delta / elapsed) * 100 / cores
        return self._last_cpu

    def check_idle(self, threshold: float, duration_seconds: float) -> bool:
        """Report the start of an idle episode.

        Returns True exactly once when CPU usage has stayed below
        ``threshold`` for ``duration_seconds``. Usage at or above the
        threshold ends the episode.
        """
        if self._last_cpu < 0:
            return False

        if self._last_cpu >= threshold:
            self.reset_idle_state()
            return False

        now = self._clock()
        if self._idle_since is None:
            self._idle_since = now

        if not self._idle_notified and now - self._idle_since >= duration_seconds:
            self._idle_notified = True
            return True
        return False

    def reset_idle_state(self) -> None:
        self._idle_since = None
        self._idle_notified = False


def human_bytes(n: int) -> str:
    """Format a byte count with binary units, e.g. ``1.5MiB``."""
    unit = 1024
    if n < unit:
        return f"{n}B"
    div, exp = unit, 0
    while n >= unit * div and exp < 5:
        div *= unit
        exp += 1
    return f"{n / div:.1f}{'KMGTPE'[exp]}iB"


def format_proc_meta(sample: ProcSample | None) -> str:
    """Format a sample as `` (RSS=... VSZ=... STAT=...)``."""
    if sample is None:
        return ""
    state = sample.state or "?"
    return (
        f" (RSS={human_bytes(sample.rss_bytes)} "
        f"VSZ={human_bytes(sample.vms_bytes)} STAT={state})"
    )


async def watch_pid(
    pid: int,
    interval: float = WATCH_INTERVAL_SECONDS,
    alive: Callable[[int], bool] = pid_alive,
) -> int:
    """Wait until ``pid`` exits.

    Returns:
        The PID that exited.
    """
    while alive(pid):
        await asyncio.sleep(interval)
    logger.info(f"Process {pid} exited")
    return pid
