"""Run a command and watch its output for assistant activity.

The command runs on a pseudo-terminal so that interactive CLIs behave as
they do in a shell. Its output is echoed unchanged and matched line by line
with the combined matcher, so any supported CLI can be wrapped without
knowing its output format in advance.
"""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
import hashlib
import logging
import os
import pty
import signal
import sys
import termios
import time
import tty
from collections import deque
from collections.abc import Callable, Sequence
from typing import BinaryIO

from ..agents import Agent
from ..config import Config
from ..errors import FirebellError, NotificationError
from ..monitoring.matchers import wrapped_command_matcher
from ..monitoring.models import MatchType
from ..monitoring.state import State
from ..monitoring.watcher import QUIET_CHECK_INTERVAL_SECONDS, quiet_sweep_notification
from ..notify.base import Notifier
from ..notify.models import (
    Notification,
    activity_notification,
    awaiting_notification,
    holding_notification,
)

logger = logging.getLogger(__name__)

WRAPPED_KEY = "wrapped"
DEFAULT_DISPLAY_NAME = "Wrapped Command"

MAX_RECENT_LINES = 10
DEDUPE_WINDOW_SECONDS = 0.5
MAX_LINE_BYTES = 1024 * 1024
READ_SIZE = 4096


def _make_controlling_tty() -> None:
    # Runs in the child before exec; stdin is already the terminal
    os.setsid()
    with contextlib.suppress(OSError):
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _terminal_input_fd() -> int | None:
    try:
        fd = sys.stdin.fileno()
    except (AttributeError, OSError, ValueError):
        return None
    return fd if os.isatty(fd) else None


def _copy_window_size(source_fd: int, target_fd: int) -> None:
    try:
        size = fcntl.ioctl(source_fd, termios.TIOCGWINSZ, b"\0" * 8)
        fcntl.ioctl(target_fd, termios.TIOCSWINSZ, size)
    except OSError as e:
        logger.debug(f"Could not copy terminal size: {e}")


def _decode_line(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").rstrip("\r")


class Runner:
    """Executes a command and reports its activity.

    Attributes:
        display_name: Name shown in notifications.
        state: Cue state of the wrapped command.
        recent_lines: The last output lines, used as notification snippets.
        forward_input: Pass firebell's terminal input through to the command.
    """

    def __init__(
        self,
        config: Config,
        notifier: Notifier,
        name: str = "",
        output: BinaryIO | None = None,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = QUIET_CHECK_INTERVAL_SECONDS,
        forward_input: bool = True,
    ):
        self.config = config
        self.notifier = notifier
        self.display_name = name or DEFAULT_DISPLAY_NAME
        self.matcher = wrapped_command_matcher(WRAPPED_KEY)
        self.sweep_interval = sweep_interval
        self.forward_input = forward_input
        self._output = output
        self._clock = clock

        self.state = State(per_instance=False, clock=clock)
        self.state.add_agent(Agent(name=WRAPPED_KEY, display_name=self.display_name, log_path=""))

        self.recent_lines: deque[str] = deque(maxlen=MAX_RECENT_LINES)
        self._last_hash = ""
        self._last_notify: float | None = None
        self._partial = bytearray()
        self._discarding = False

    async def run(self, args: Sequence[str]) -> int:
        """Run ``args`` on a pseudo-terminal until it exits.

        The command sees a terminal on stdin, stdout and stderr. When
        firebell's own stdin is a terminal it is switched to raw mode and
        forwarded, and window size changes are passed on.

        Returns:
            The command's exit code.

        Raises:
            FirebellError: If no command is given or it cannot be started.
        """
        if not args:
            raise FirebellError("no command specified")

        master_fd, slave_fd = pty.openpty()
        input_fd = _terminal_input_fd() if self.forward_input else None
        if input_fd is not None:
            _copy_window_size(input_fd, master_fd)

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                preexec_fn=_make_controlling_tty,
            )
        except OSError as e:
            os.close(master_fd)
            raise FirebellError(f"failed to start command: {e}") from e
        finally:
            os.close(slave_fd)

        logger.debug(f"Started {args[0]} (PID {proc.pid})")
        self._partial.clear()
        self._discarding = False

        loop = asyncio.get_running_loop()
        chunks: asyncio.Queue[bytes] = asyncio.Queue()
        loop.add_reader(master_fd, self._read_output, master_fd, chunks)

        saved_mode = None
        resize_handler = False
        if input_fd is not None:
            try:
                saved_mode = termios.tcgetattr(input_fd)
                tty.setraw(input_fd)
            except termios.error as e:
                logger.debug(f"Could not switch terminal to raw mode: {e}")
            loop.add_reader(input_fd, self._forward_input, input_fd, master_fd)
            try:
                loop.add_signal_handler(signal.SIGWINCH, _copy_window_size, input_fd, master_fd)
                resize_handler = True
            except RuntimeError as e:
                logger.debug(f"Terminal resizes will not be forwarded: {e}")

        sweep_task = asyncio.create_task(self._sweep_loop())
        try:
            while True:
                chunk = await chunks.get()
                if not chunk:
                    break
                self._echo(chunk)
                for line in self.feed(chunk):
                    await self.process_line(line)

            if self._partial and not self._discarding:
                await self.process_line(_decode_line(bytes(self._partial)))
                self._partial.clear()

            return await proc.wait()
        finally:
            sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweep_task

            loop.remove_reader(master_fd)
            if input_fd is not None:
                loop.remove_reader(input_fd)
                if resize_handler:
                    loop.remove_signal_handler(signal.SIGWINCH)
                if saved_mode is not None:
                    termios.tcsetattr(input_fd, termios.TCSAFLUSH, saved_mode)
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
            os.close(master_fd)

    def _read_output(self, master_fd: int, chunks: asyncio.Queue) -> None:
        try:
            data = os.read(master_fd, READ_SIZE)
        except OSError:
            # EIO once every process holding the terminal has exited
            data = b""
        if not data:
            asyncio.get_running_loop().remove_reader(master_fd)
        chunks.put_nowait(data)

    def _forward_input(self, input_fd: int, master_fd: int) -> None:
        try:
            data = os.read(input_fd, READ_SIZE)
            if data:
                os.write(master_fd, data)
                return
        except OSError as e:
            logger.debug(f"Stopped forwarding input: {e}")
        asyncio.get_running_loop().remove_reader(input_fd)

    def feed(self, chunk: bytes) -> list[str]:
        """Split raw terminal output into complete lines.

        An unterminated tail is kept for the next chunk. A line growing past
        ``MAX_LINE_BYTES`` is dropped up to its terminating newline.
        """
        *complete, rest = chunk.split(b"\n")
        lines: list[str] = []
        for part in complete:
            if self._discarding:
                self._discarding = False
            else:
                lines.append(_decode_line(bytes(self._partial) + part))
            self._partial.clear()

        if not self._discarding:
            self._partial += rest
            if len(self._partial) > MAX_LINE_BYTES:
                logger.warning(f"Dropping output line longer than {MAX_LINE_BYTES} bytes")
                self._partial.clear()
                self._discarding = True
        return lines

    def _echo(self, raw: bytes) -> None:
        output = self._output or sys.stdout.buffer
        output.write(raw)
        output.flush()

    async def process_line(self, line: str) -> None:
        """Match one output line and record its cue."""
        self.recent_lines.append(line)

        cue = self.matcher.match(line)
        if cue is None:
            return

        self.state.record_cue(WRAPPED_KEY, cue.type)

        if cue.type is MatchType.HOLDING:
            await self._send(holding_notification(self.display_name, cue.tool))
        elif cue.type is MatchType.AWAITING:
            await self._send(awaiting_notification(self.display_name, "Ready for your input"))
        elif self.config.output.verbosity == "verbose" and not self._is_duplicate(line):
            snippet = ""
            if self.config.output.include_snippets:
                count = max(0, self.config.output.snippet_lines)
                snippet = "\n".join(list(self.recent_lines)[-count:]) if count else ""
            await self._send(activity_notification(self.display_name, cue.reason, snippet))

    def _is_duplicate(self, line: str) -> bool:
        digest = hashlib.sha256(line.encode("utf-8")).hexdigest()[:16]
        now = self._clock()
        if (
            digest == self._last_hash
            and self._last_notify is not None
            and now - self._last_notify < DEDUPE_WINDOW_SECONDS
        ):
            return True
        self._last_hash = digest
        self._last_notify = now
        return False

    async def check_quiet(self) -> None:
        """Send the quiet notification once the command went silent."""
        if not self.config.monitor.completion_detection:
            return
        if not self.state.should_send_quiet(WRAPPED_KEY, self.config.quiet_duration):
            return
        await self._send(
            quiet_sweep_notification(self.display_name, self.state.get_cue_type(WRAPPED_KEY))
        )
        self.state.mark_quiet_notified(WRAPPED_KEY)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            await self.check_quiet()

    async def _send(self, notification: Notification) -> None:
        try:
            await self.notifier.send(notification)
        except (NotificationError, OSError) as e:
            logger.error(f"Failed to send notification: {e}")
