"""Incremental log tailing with rotation detection.

This module reads only the bytes appended to a log file since the previous
read, buffering an incomplete trailing line until its terminator arrives.
Rotation and truncation are detected when the file shrinks below the last
read offset, in which case reading restarts from the beginning.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from ..agents import has_log_extension, matches_log_patterns
from .buffers import get_buffer, put_buffer

logger = logging.getLogger(__name__)

# Scan results are reused for this many seconds
DEFAULT_SCAN_TTL = 5.0

# Bytes read from the end of a file when building a snippet
SNIPPET_READ_SIZE = 16 * 1024


class Tailer:
    """Reads newly appended lines from a single log file.

    The tailer keeps the file open between reads and remembers its byte
    offset. Only complete lines are returned; a trailing fragment without a
    newline is held back and prepended to the next read.

    Attributes:
        path: Path of the tailed file.
        from_beginning: Read existing content on first open instead of
            skipping to the current end of file.
    """

    def __init__(self, path: str | Path, from_beginning: bool = False):
        """Initialize tailer.

        Args:
            path: File to tail.
            from_beginning: When False, the first open seeks to the end so
                that only content written afterwards is returned.
        """
        self.path = str(path)
        self.from_beginning = from_beginning
        self._file: BinaryIO | None = None
        self._offset = 0
        self._pending = b""
        self._started = False

    @property
    def offset(self) -> int:
        """Byte offset up to which the file has been consumed."""
        return self._offset

    @property
    def pending(self) -> str:
        """Buffered incomplete line, decoded."""
        return self._pending.decode("utf-8", errors="replace")

    def _ensure_file(self) -> None:
        if self._file is not None:
            return

        self._file = open(self.path, "rb")  # noqa: SIM115
        self._offset = 0
        self._pending = b""

        if not self.from_beginning and not self._started:
            try:
                self._offset = os.fstat(self._file.fileno()).st_size
            except OSError:
                self._offset = 0
        self._started = True

    def prime(self) -> None:
        """Open the file now so that the next read starts from the current end.

        Failures are ignored; the file is opened again on the next read.
        """
        try:
            self._ensure_file()
        except OSError as e:
            logger.debug(f"Could not open {self.path} yet: {e}")

    def _close_file(self) -> None:
        if self._file is not None:
            try:
                self._file.close()
            except OSError as e:
                logger.debug(f"Error closing {self.path}: {e}")
        self._file = None

    def reset(self) -> None:
        """Close the file and discard all position state."""
        self._close_file()
        self._offset = 0
        self._pending = b""
        self._started = False

    def close(self) -> None:
        """Close the underlying file handle."""
        self._close_file()

    def read_new_lines(self) -> list[str]:
        """Read complete lines appended since the last call.

        Returns:
            List of new lines without their terminators.

        Raises:
            OSError: If the file cannot be opened, stat'ed or read. The
                caller is expected to reset the tailer and retry later.
        """
        self._ensure_file()

        try:
            size = os.stat(self.path).st_size
        except OSError:
            self.reset()
            raise

        if size < self._offset:
            logger.info(
                f"Log rotation detected for {self.path} "
                f"(offset {self._offset} > size {size})"
            )
            # Keep _started so the reopened file is read from offset 0
            self._close_file()
            self._offset = 0
            self._pending = b""
            self._ensure_file()

        if size == self._offset:
            return []

        assert self._file is not None
        self._file.seek(self._offset)

        chunks: list[bytes] = []
        buf = get_buffer()
        try:
            with memoryview(buf) as view:
                while True:
                    n = self._file.readinto(view)
                    if not n:
                        break
                    chunks.append(bytes(view[:n]))
                    self._offset += n
        finally:
            put_buffer(buf)

        data = self._pending + b"".join(chunks)
        parts = data.split(b"\n")
        # Last element is b"" when data ends with a newline
        self._pending = parts.pop()

        return [_decode_line(part) for part in parts]


def _decode_line(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").removesuffix("\r")


def tail_snippet(path: str | Path, max_lines: int, max_bytes: int = 500) -> str:
    """Return the last ``max_lines`` lines of a file for notification context.

    Only the final 16 KiB of the file are considered. The result is cut to
    ``max_bytes`` characters with a trailing ``...``. Returns an empty
    string on any error.
    """
    if max_lines <= 0:
        return ""

    try:
        with open(path, "rb") as f:
            size = os.fstat(f.fileno()).st_size
            f.seek(max(0, size - SNIPPET_READ_SIZE))
            content = f.read()
    except OSError:
        return ""

    lines = content.decode("utf-8", errors="replace").rstrip("\r\n").split("\n")
    if len(lines) > max_lines:
        lines = lines[-max_lines:]

    snippet = "\n".join(lines)
    if max_bytes > 0 and len(snippet) > max_bytes:
        if max_bytes > 3:
            return snippet[: max_bytes - 3] + "..."
        return snippet[:max_bytes]
    return snippet


@dataclass
class FileEntry:
    """A discovered log file and its modification time."""

    path: str
    mtime: float


def find_recent_files(
    base_path: str | Path, max_depth: int, limit: int, patterns: Sequence[str] = ()
) -> list[FileEntry]:
    """Find the most recently modified log files under ``base_path``.

    Args:
        base_path: Directory to walk, or a single log file.
        max_depth: Maximum depth of files relative to ``base_path``; a file
            directly inside it has depth 1.
        limit: Maximum number of files to return (<= 0 means unlimited).
        patterns: Glob patterns file names must match; empty accepts any
            file with a log extension. A single-file base only needs the
            extension.

    Returns:
        Entries sorted newest first.
    """
    base = str(base_path)
    try:
        if os.path.isfile(base):
            if has_log_extension(base):
                return [FileEntry(path=base, mtime=os.stat(base).st_mtime)]
            return []
        if not os.path.isdir(base):
            return []
    except OSError:
        return []

    entries: list[FileEntry] = []
    for root, dirs, files in os.walk(base):
        rel = os.path.relpath(root, base)
        depth = 0 if rel == os.curdir else rel.count(os.sep) + 1

        if depth + 1 > max_depth:
            dirs[:] = []
            continue
        # Files in subdirectories would exceed the limit
        if depth + 2 > max_depth:
            dirs[:] = []

        for name in files:
            if not matches_log_patterns(name, patterns):
                continue
            path = os.path.join(root, name)
            try:
                mtime = os.stat(path).st_mtime
            except OSError:
                continue
            entries.append(FileEntry(path=path, mtime=mtime))

    entries.sort(key=lambda e: (-e.mtime, e.path))
    if limit > 0:
        entries = entries[:limit]
    return entries


class TailerManager:
    """Owns the tailers for one monitored agent.

    The manager periodically rescans the agent's base path for the most
    recent log files and keeps exactly one :class:`Tailer` per file. Scan
    results are cached for a few seconds so that bursts of filesystem
    events do not re-walk large directory trees.

    Attributes:
        base_path: Directory (or single file) holding the agent's logs.
        max_files: Maximum number of files tailed at once.
        max_depth: Maximum walk depth.
        patterns: Glob patterns of the agent's log files.
        from_beginning: Whether new tailers read existing content.
    """

    def __init__(
        self,
        base_path: str | Path,
        max_files: int,
        max_depth: int,
        from_beginning: bool = False,
        scan_ttl: float = DEFAULT_SCAN_TTL,
        patterns: Sequence[str] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_path = str(base_path)
        self.max_files = max_files
        self.max_depth = max_depth
        self.from_beginning = from_beginning
        self.scan_ttl = scan_ttl
        self.patterns = tuple(patterns)
        self._clock = clock
        self._tailers: dict[str, Tailer] = {}
        self._last_scan: float | None = None
        self._missing_warned = False
        self._lock = threading.Lock()

    @property
    def paths(self) -> list[str]:
        """Currently tailed file paths, newest first as of the last scan."""
        with self._lock:
            return list(self._tailers)

    def owns(self, path: str | Path) -> bool:
        """Whether ``path`` lies under this manager's base path."""
        candidate = os.path.abspath(str(path))
        base = os.path.abspath(self.base_path)
        return candidate == base or candidate.startswith(base.rstrip(os.sep) + os.sep)

    def refresh_files(self, force: bool = False) -> list[str]:
        """Reconcile the tailed files with the most recent files on disk.

        Args:
            force: Ignore the scan cache.

        Returns:
            Paths of the files now being tailed.
        """
        with self._lock:
            now = self._clock()
            if (
                not force
                and self._last_scan is not None
                and now - self._last_scan < self.scan_ttl
            ):
                return list(self._tailers)

            entries = find_recent_files(
                self.base_path, self.max_depth, self.max_files, self.patterns
            )
            self._last_scan = now

            if not os.path.exists(self.base_path):
                if not self._missing_warned:
                    logger.warning(f"Log path does not exist yet: {self.base_path}")
                    self._missing_warned = True
            elif self._missing_warned:
                logger.info(f"Log path appeared: {self.base_path}")
                self._missing_warned = False

            desired = [entry.path for entry in entries]
            for path in list(self._tailers):
                if path not in desired:
                    logger.debug(f"No longer tailing {path}")
                    self._tailers.pop(path).close()

            tailers: dict[str, Tailer] = {}
            for path in desired:
                tailer = self._tailers.get(path)
                if tailer is None:
                    logger.debug(f"Tailing {path}")
                    tailer = Tailer(path, from_beginning=self.from_beginning)
                    tailer.prime()
                tailers[path] = tailer
            self._tailers = tailers

            return list(self._tailers)

    def read_all_new(self) -> dict[str, list[str]]:
        """Read new lines from every tailed file.

        A tailer that fails is reset and skipped for this round.

        Returns:
            Mapping of path to its new lines; files without new lines are
            omitted.
        """
        result: dict[str, list[str]] = {}
        with self._lock:
            for path, tailer in self._tailers.items():
                try:
                    lines = tailer.read_new_lines()
                except OSError as e:
                    logger.debug(f"Read failed for {path}, resetting tailer: {e}")
                    tailer.reset()
                    continue
                if lines:
                    result[path] = lines
        return result

    def close(self) -> None:
        """Close all tailers."""
        with self._lock:
            for tailer in self._tailers.values():
                tailer.close()
            self._tailers = {}
            self._last_scan = None
