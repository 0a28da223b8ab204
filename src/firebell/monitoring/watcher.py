"""Orchestration loop tying tailing, matching, state and notifications together.

The :class:`Watcher` owns one :class:`TailerManager` and one matcher per
agent, the :class:`State` table and an optional :class:`ProcessMonitor`.
A single asyncio task runs the dispatch loop. It waits on a queue with a
timeout equal to the next timer deadline, so filesystem changes, the
process-exit signal, stop requests and the periodic timers are all handled
in one place:

- push mode: watchdog's observer thread posts changed paths to the queue;
- pull mode: a poll timer reads every agent's files at a fixed interval.

Both drivers delegate to the same operations (:meth:`Watcher.process_agent`
and :meth:`Watcher.check_quiet_periods`), so identical input lines produce
identical notifications in either mode.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Callable, Sequence
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..agents import (
    Agent,
    expand_path,
    get_process_candidates,
    matches_log_patterns,
    with_log_path,
)
from ..config import Config
from ..errors import NotificationError, WatcherError
from ..notify.base import Notifier
from ..notify.models import (
    Notification,
    activity_notification,
    awaiting_notification,
    holding_notification,
    process_exit_notification,
    process_idle_notification,
    quiet_notification,
)
from .matchers import Matcher, create_matcher
from .models import MatchType
from .process_monitor import ProcessMonitor, format_proc_meta, watch_pid
from .state import State
from .tailer import TailerManager, tail_snippet

logger = logging.getLogger(__name__)

RESCAN_INTERVAL_SECONDS = 5.0
QUIET_CHECK_INTERVAL_SECONDS = 1.0
PROCESS_SAMPLE_INTERVAL_SECONDS = 5.0

SNIPPET_MAX_BYTES = 500

# Queue item kinds
_FS_EVENT = "fs"
_PROCESS_EXIT = "exit"
_WAKE = "wake"


def quiet_sweep_notification(
    display_name: str, cue_type: MatchType | None, cpu_pct: float = -1.0
) -> Notification:
    """Build the notification for a session that went quiet.

    COMPLETE means the turn finished ("Cooling"). ACTIVITY without a
    completion marker is inferred as waiting for input ("Awaiting").
    HOLDING means the tool approval is still pending.
    """
    if cue_type is MatchType.ACTIVITY:
        return awaiting_notification(display_name)
    if cue_type is MatchType.HOLDING:
        return holding_notification(display_name, message="Still waiting for tool approval")
    return quiet_notification(display_name, cpu_pct)


class LogEventHandler(FileSystemEventHandler):
    """Hands watchdog events to the asyncio loop.

    Runs on the observer thread and never touches watcher state.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue):
        super().__init__()
        self._loop = loop
        self._queue = queue

    def _post(self, path: bytes | str) -> None:
        if isinstance(path, bytes):
            path = path.decode("utf-8", errors="replace")
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, (_FS_EVENT, path))
        except RuntimeError:
            # Loop already closed during shutdown
            logger.debug(f"Dropping filesystem event for {path}")

    def on_created(self, event: FileSystemEvent) -> None:
        self._post(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._post(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._post(event.dest_path)


class Watcher:
    """Monitors agent logs and emits lifecycle notifications.

    Attributes:
        config: Run configuration.
        notifier: Destination of all notifications.
        state: Lifecycle state table.
        managers: Tailer manager per agent name.
        matchers: Matcher per agent name.
        process_monitor: Process monitor, None when tracking is disabled.
    """

    def __init__(
        self,
        config: Config,
        notifier: Notifier,
        agents: Sequence[Agent],
        clock: Callable[[], float] = time.monotonic,
        process_monitor: ProcessMonitor | None = None,
        observer_factory: Callable[[], Any] = Observer,
        exit_watch_interval: float = PROCESS_SAMPLE_INTERVAL_SECONDS,
    ):
        """Initialize watcher.

        Args:
            config: Run configuration.
            notifier: Destination of all notifications.
            agents: Agents to monitor.
            clock: Monotonic time source for the state table.
            process_monitor: Process monitor to use instead of building one.
            observer_factory: Factory for the watchdog observer.
            exit_watch_interval: Seconds between process liveness checks.
        """
        self.config = config
        self.notifier = notifier
        self.state = State(per_instance=config.monitor.per_instance, clock=clock)
        self.managers: dict[str, TailerManager] = {}
        self.matchers: dict[str, Matcher] = {}

        if process_monitor is None and config.monitor.process_tracking:
            process_monitor = ProcessMonitor(get_process_candidates(agents))
        self.process_monitor = process_monitor

        for agent in agents:
            agent = with_log_path(agent, config.agents.paths.get(agent.name))
            self.state.add_agent(agent)
            self.managers[agent.name] = TailerManager(
                expand_path(agent.log_path),
                config.advanced.max_recent_files,
                config.advanced.watch_depth,
                from_beginning=False,
                patterns=agent.log_patterns,
            )
            self.matchers[agent.name] = create_matcher(agent.name)

        self._observer_factory = observer_factory
        self._observer: Any = None
        self._handler: LogEventHandler | None = None
        self._watched: set[str] = set()
        self.exit_watch_interval = exit_watch_interval

        self._queue: asyncio.Queue | None = None
        self._stop_event: asyncio.Event | None = None
        self._stop_requested = False
        self._exit_task: asyncio.Task | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Shared operations

    async def process_agent(self, agent_name: str, force_refresh: bool = False) -> None:
        """Refresh one agent's files and process all new lines."""
        manager = self.managers.get(agent_name)
        if manager is None:
            return

        paths = manager.refresh_files(force=force_refresh)
        self.state.update_watched_paths(agent_name, paths)

        for path, lines in manager.read_all_new().items():
            await self.process_lines(agent_name, path, lines)

    async def process_lines(self, agent_name: str, path: str, lines: Sequence[str]) -> None:
        """Classify lines of one file in order and record their cues."""
        matcher = self.matchers.get(agent_name)
        agent_state = self.state.get_agent(agent_name)
        if matcher is None or agent_state is None:
            return

        verbose = self.config.output.verbosity == "verbose"

        for line in lines:
            if not line:
                continue

            signal = matcher.match(line)
            if signal is None:
                continue

            if self.state.per_instance:
                key = path
                display_name = self.state.get_or_create_instance(agent_name, path).display_name
            else:
                key = agent_name
                display_name = agent_state.display_name

            self.state.record_cue(key, signal.type)
            logger.debug(f"{display_name}: {signal.type.value} ({signal.reason})")

            if signal.type is MatchType.HOLDING:
                await self._send(holding_notification(display_name, signal.tool))
            elif signal.type is MatchType.AWAITING:
                await self._send(awaiting_notification(display_name, "Ready for your input"))
            elif verbose:
                snippet = ""
                if self.config.output.include_snippets:
                    snippet = tail_snippet(path, self.config.output.snippet_lines, SNIPPET_MAX_BYTES)
                await self._send(activity_notification(display_name, signal.reason, snippet))

    async def poll_all_agents(self) -> None:
        for name in list(self.managers):
            await self.process_agent(name)

    async def check_quiet_periods(self) -> None:
        """Send the quiet notification for every session that went silent."""
        if not self.config.monitor.completion_detection:
            return

        quiet = self.config.quiet_duration
        cpu_pct = self.process_monitor.last_cpu if self.process_monitor else -1.0

        for key in self.state.keys():
            if not self.state.should_send_quiet(key, quiet):
                continue
            notification = quiet_sweep_notification(
                self.state.display_name(key), self.state.get_cue_type(key), cpu_pct
            )
            await self._send(notification)
            self.state.mark_quiet_notified(key)

    def refresh_files(self, force: bool = False) -> None:
        """Rescan every agent's files and update the watched paths."""
        for name, manager in self.managers.items():
            self.state.update_watched_paths(name, manager.refresh_files(force=force))
        if self._observer is not None:
            self._schedule_watches()

    async def sample_process(self) -> None:
        """Sample the monitored process and report idle episodes."""
        monitor = self.process_monitor
        if monitor is None:
            return

        pid = monitor.get_pid()
        if pid <= 0:
            return

        if pid != self.state.process_snapshot().pid:
            self.state.set_pid(pid)
            self._start_exit_watch(pid)
            logger.info(f"Now tracking process: PID {pid}")

        cpu_pct = monitor.sample()
        sample = monitor.last_sample
        if sample is not None:
            self.state.update_proc_sample(sample)

        if cpu_pct < 0:
            return

        threshold = self.config.monitor.idle_cpu_threshold
        idle_seconds = self.config.monitor.idle_seconds
        if monitor.check_idle(threshold, idle_seconds):
            self.state.mark_process_idle()
            await self._send(
                process_idle_notification(pid, cpu_pct, idle_seconds, format_proc_meta(sample))
            )
        elif cpu_pct >= threshold:
            self.state.reset_process_idle()

    async def handle_process_exit(self, pid: int) -> None:
        """Send the process-exit notification once per tracked process."""
        if pid != self.state.process_snapshot().pid or self.state.is_process_exit_notified():
            return
        await self._send(process_exit_notification(pid))
        self.state.mark_process_exited()

    async def handle_fs_event(self, path: str) -> None:
        """Process the agent owning a changed path."""
        for name, manager in self.managers.items():
            if not manager.owns(path):
                continue
            # A new log file is picked up without waiting for the scan cache
            force = matches_log_patterns(path, manager.patterns) and path not in manager.paths
            await self.process_agent(name, force_refresh=force)
            return

    def snapshot(self) -> dict[str, Any]:
        """Status view: state table plus the files being tailed."""
        status = self.state.snapshot()
        status["agents"] = {name: manager.paths for name, manager in self.managers.items()}
        return status

    async def _send(self, notification: Notification) -> None:
        try:
            await self.notifier.send(notification)
        except (NotificationError, OSError) as e:
            logger.error(f"Failed to send '{notification.title}' notification: {e}")

    # ------------------------------------------------------------------
    # Process tracking

    def _setup_process_monitoring(self) -> None:
        if self.process_monitor is None:
            return
        pid = self.process_monitor.get_pid()
        if pid > 0:
            self.state.set_pid(pid)
            self._start_exit_watch(pid)
            logger.info(f"Tracking process: PID {pid}")

    def _start_exit_watch(self, pid: int) -> None:
        if self._queue is None:
            return
        if self._exit_task is not None:
            self._exit_task.cancel()
        self._exit_task = asyncio.create_task(self._watch_exit(pid))

    async def _watch_exit(self, pid: int) -> None:
        await watch_pid(pid, interval=self.exit_watch_interval)
        if self._queue is not None:
            self._queue.put_nowait((_PROCESS_EXIT, pid))

    # ------------------------------------------------------------------
    # Filesystem observer

    def _start_observer(self, loop: asyncio.AbstractEventLoop) -> None:
        assert self._queue is not None
        try:
            self._observer = self._observer_factory()
            self._handler = LogEventHandler(loop, self._queue)
            self._schedule_watches()
            self._observer.start()
        except (OSError, RuntimeError) as e:
            self._observer = None
            raise WatcherError(f"failed to start filesystem observer: {e}") from e

    def _schedule_watches(self) -> None:
        """Watch every agent base path that exists and is not watched yet."""
        for manager in self.managers.values():
            base = manager.base_path
            if base in self._watched:
                continue

            if os.path.isdir(base):
                watch_path, recursive = base, True
            elif os.path.isfile(base):
                watch_path, recursive = os.path.dirname(base) or os.curdir, False
            else:
                # Retried on the next rescan; the tailer manager reports it
                logger.debug(f"Cannot watch {base}: path does not exist yet")
                continue

            try:
                self._observer.schedule(self._handler, watch_path, recursive=recursive)
            except OSError as e:
                logger.warning(f"Cannot watch {base}: {e}")
                continue
            self._watched.add(base)
            logger.debug(f"Watching {watch_path} (recursive={recursive})")

    def _stop_observer(self) -> None:
        if self._observer is None:
            return
        observer, self._observer = self._observer, None
        observer.stop()
        observer.join(timeout=5)
        self._watched.clear()

    # ------------------------------------------------------------------
    # Run loop

    async def run(self, poll: bool | None = None) -> None:
        """Run the dispatch loop until :meth:`stop` is called.

        Args:
            poll: Use polling instead of filesystem notifications. Defaults
                to ``advanced.force_polling``.

        Raises:
            WatcherError: If the watcher is closed, or the filesystem
                observer cannot be started in push mode.
        """
        if self._closed:
            raise WatcherError("watcher is closed")
        if poll is None:
            poll = self.config.advanced.force_polling

        loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._stop_event = asyncio.Event()
        if self._stop_requested:
            self._stop_event.set()

        if not poll:
            self._start_observer(loop)

        intervals = {
            "rescan": RESCAN_INTERVAL_SECONDS,
            "quiet": QUIET_CHECK_INTERVAL_SECONDS,
            "process": PROCESS_SAMPLE_INTERVAL_SECONDS,
        }
        if poll:
            intervals["poll"] = self.config.poll_interval

        try:
            self.refresh_files(force=True)
            self._setup_process_monitoring()
            logger.info(
                f"Watching for activity ({'polling' if poll else 'filesystem events'}, "
                f"agents: {', '.join(self.managers) or 'none'})"
            )

            now = loop.time()
            deadlines = {name: now + interval for name, interval in intervals.items()}

            while not self._stop_event.is_set():
                timeout = max(0.0, min(deadlines.values()) - loop.time())
                item = await self._next_item(timeout)
                if item is not None:
                    await self._dispatch(item)

                now = loop.time()
                for name, due in deadlines.items():
                    if self._stop_event.is_set() or now < due:
                        continue
                    await self._fire_timer(name)
                    deadlines[name] = loop.time() + intervals[name]
        finally:
            self._stop_observer()
            if self._exit_task is not None:
                self._exit_task.cancel()
                self._exit_task = None
            logger.info("Watcher stopped")

    async def _next_item(self, timeout: float) -> tuple[str, Any] | None:
        assert self._queue is not None
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        if timeout <= 0:
            return None
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except TimeoutError:
            return None

    async def _dispatch(self, item: tuple[str, Any]) -> None:
        kind, payload = item
        if kind == _FS_EVENT:
            await self.handle_fs_event(payload)
        elif kind == _PROCESS_EXIT:
            await self.handle_process_exit(payload)

    async def _fire_timer(self, name: str) -> None:
        if name == "rescan":
            self.refresh_files()
        elif name == "quiet":
            await self.check_quiet_periods()
        elif name == "process":
            await self.sample_process()
        elif name == "poll":
            await self.poll_all_agents()

    def stop(self) -> None:
        """Ask the run loop to exit on its next iteration."""
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()
        if self._queue is not None:
            self._queue.put_nowait((_WAKE, None))

    def close(self) -> None:
        """Release the observer, tailers and helper tasks. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self.stop()
        self._stop_observer()
        if self._exit_task is not None:
            self._exit_task.cancel()
            self._exit_task = None
        for manager in self.managers.values():
            manager.close()
