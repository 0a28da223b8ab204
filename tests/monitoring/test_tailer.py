"""Tests for Tailer, TailerManager and file discovery."""

import os
from pathlib import Path

import pytest

from firebell.monitoring.buffers import DEFAULT_BUFFER_SIZE, get_buffer, put_buffer
from firebell.monitoring.tailer import Tailer, TailerManager, find_recent_files, tail_snippet


def _append(path: Path, text: str | bytes) -> None:
    mode = "ab" if isinstance(text, bytes) else "a"
    with path.open(mode) as f:
        f.write(text)


def _touch(path: Path, mtime: float) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("x\n")
    os.utime(path, (mtime, mtime))


class TestTailerBasic:
    """Tests for incremental reading."""

    def test_first_read_skips_existing_content(self, temp_log_file: Path) -> None:
        """Test that a new tailer starts at the end of the file."""
        tailer = Tailer(temp_log_file)

        assert tailer.read_new_lines() == []
        assert tailer.offset == temp_log_file.stat().st_size

        tailer.close()

    def test_from_beginning_reads_existing_content(self, temp_log_file: Path) -> None:
        """Test reading existing content when requested."""
        tailer = Tailer(temp_log_file, from_beginning=True)

        assert tailer.read_new_lines() == ["Line 1", "Line 2", "Line 3"]
        tailer.close()

    def test_reads_only_appended_lines(self, temp_log_file: Path) -> None:
        """Test that each read returns only what was appended since the last one."""
        tailer = Tailer(temp_log_file)
        tailer.read_new_lines()

        _append(temp_log_file, "Line 4\nLine 5\n")
        assert tailer.read_new_lines() == ["Line 4", "Line 5"]

        assert tailer.read_new_lines() == []

        _append(temp_log_file, "Line 6\n")
        assert tailer.read_new_lines() == ["Line 6"]
        tailer.close()

    def test_partial_line_is_buffered(self, empty_log_file: Path) -> None:
        """Test that an unterminated line is held until its newline arrives."""
        tailer = Tailer(empty_log_file)
        tailer.read_new_lines()

        _append(empty_log_file, '{"type": "assis')
        assert tailer.read_new_lines() == []
        assert tailer.pending == '{"type": "assis'

        _append(empty_log_file, 'tant"}\nnext')
        assert tailer.read_new_lines() == ['{"type": "assistant"}']
        assert tailer.pending == "next"
        tailer.close()

    def test_crlf_line_endings(self, empty_log_file: Path) -> None:
        """Test that a trailing carriage return is stripped."""
        tailer = Tailer(empty_log_file)
        tailer.read_new_lines()

        _append(empty_log_file, b"windows line\r\n")
        assert tailer.read_new_lines() == ["windows line"]
        tailer.close()

    def test_invalid_utf8_is_replaced(self, empty_log_file: Path) -> None:
        """Test that undecodable bytes do not break reading."""
        tailer = Tailer(empty_log_file)
        tailer.read_new_lines()

        _append(empty_log_file, b"bad \xff byte\n")
        lines = tailer.read_new_lines()

        assert len(lines) == 1
        assert lines[0].startswith("bad ")
        assert "�" in lines[0]
        tailer.close()

    def test_large_append_spans_several_buffers(self, empty_log_file: Path) -> None:
        """Test reading more data than one pooled buffer holds."""
        tailer = Tailer(empty_log_file)
        tailer.read_new_lines()

        long_line = "a" * (DEFAULT_BUFFER_SIZE * 3)
        _append(empty_log_file, long_line + "\nshort\n")

        assert tailer.read_new_lines() == [long_line, "short"]
        tailer.close()

    def test_prime_records_end_position(self, temp_log_file: Path) -> None:
        """Test that priming fixes the start position before any read."""
        tailer = Tailer(temp_log_file)
        tailer.prime()

        _append(temp_log_file, "Line 4\n")

        assert tailer.read_new_lines() == ["Line 4"]
        tailer.close()

    def test_prime_of_missing_file_is_ignored(self, tmp_path: Path) -> None:
        tailer = Tailer(tmp_path / "later.jsonl")

        tailer.prime()

        assert tailer.offset == 0

    def test_empty_lines_are_preserved(self, empty_log_file: Path) -> None:
        """Test that blank lines are returned as empty strings."""
        tailer = Tailer(empty_log_file)
        tailer.read_new_lines()

        _append(empty_log_file, "one\n\ntwo\n")
        assert tailer.read_new_lines() == ["one", "", "two"]
        tailer.close()


class TestTailerRotation:
    """Tests for truncation and rotation handling."""

    def test_truncation_restarts_from_beginning(self, temp_log_file: Path) -> None:
        """Test that a shrunk file is read again from offset 0."""
        tailer = Tailer(temp_log_file)
        tailer.read_new_lines()

        temp_log_file.write_text("new\n")

        assert tailer.read_new_lines() == ["new"]
        assert tailer.offset == len("new\n")
        tailer.close()

    def test_replaced_file_is_reopened(self, temp_log_file: Path) -> None:
        """Test rotation where the file is renamed and recreated smaller."""
        tailer = Tailer(temp_log_file)
        tailer.read_new_lines()

        temp_log_file.rename(temp_log_file.with_suffix(".old"))
        temp_log_file.write_text("A\n")

        assert tailer.read_new_lines() == ["A"]
        tailer.close()

    def test_missing_file_raises_and_resets(self, temp_log_file: Path) -> None:
        """Test that a deleted file raises OSError and clears the position."""
        tailer = Tailer(temp_log_file)
        tailer.read_new_lines()

        temp_log_file.unlink()

        with pytest.raises(OSError):
            tailer.read_new_lines()
        assert tailer.offset == 0

    def test_open_failure_raises(self, tmp_path: Path) -> None:
        """Test that a nonexistent path raises on the first read."""
        tailer = Tailer(tmp_path / "missing.jsonl")

        with pytest.raises(OSError):
            tailer.read_new_lines()


class TestTailSnippet:
    """Tests for snippet extraction."""

    def test_last_lines(self, tmp_path: Path) -> None:
        path = tmp_path / "log.txt"
        path.write_text("one\ntwo\nthree\nfour")

        assert tail_snippet(path, 2) == "three\nfour"

    def test_truncated_to_max_bytes(self, tmp_path: Path) -> None:
        path = tmp_path / "log.txt"
        path.write_text("x" * 1000)

        snippet = tail_snippet(path, 5, max_bytes=20)

        assert len(snippet) == 20
        assert snippet.endswith("...")

    def test_missing_file_returns_empty(self, tmp_path: Path) -> None:
        assert tail_snippet(tmp_path / "nope.log", 5) == ""

    def test_zero_lines_returns_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "log.txt"
        path.write_text("data\n")

        assert tail_snippet(path, 0) == ""


class TestFindRecentFiles:
    """Tests for log file discovery."""

    def test_newest_first_with_limit(self, log_dir: Path) -> None:
        """Test ordering by modification time and the limit."""
        _touch(log_dir / "old.jsonl", 1000)
        _touch(log_dir / "new.jsonl", 3000)
        _touch(log_dir / "mid.jsonl", 2000)

        entries = find_recent_files(log_dir, max_depth=4, limit=2)

        assert [Path(e.path).name for e in entries] == ["new.jsonl", "mid.jsonl"]
        assert entries[0].mtime == 3000

    def test_ignores_non_log_extensions(self, log_dir: Path) -> None:
        _touch(log_dir / "session.jsonl", 1000)
        _touch(log_dir / "image.png", 2000)

        entries = find_recent_files(log_dir, max_depth=4, limit=0)

        assert [Path(e.path).name for e in entries] == ["session.jsonl"]

    def test_agent_patterns_filter_files(self, log_dir: Path) -> None:
        _touch(log_dir / "session.jsonl", 1000)
        _touch(log_dir / "debug.log", 2000)

        entries = find_recent_files(log_dir, max_depth=4, limit=0, patterns=("*.jsonl",))

        assert [Path(e.path).name for e in entries] == ["session.jsonl"]

    def test_depth_limit(self, log_dir: Path) -> None:
        """Test that files deeper than max_depth are not returned."""
        _touch(log_dir / "top.log", 1000)
        _touch(log_dir / "a" / "one.log", 1000)
        _touch(log_dir / "a" / "b" / "two.log", 1000)

        names = {Path(e.path).name for e in find_recent_files(log_dir, max_depth=2, limit=0)}

        assert names == {"top.log", "one.log"}

    def test_single_file_base(self, log_dir: Path) -> None:
        path = log_dir / "only.log"
        _touch(path, 1500)

        entries = find_recent_files(path, max_depth=1, limit=3)

        assert [e.path for e in entries] == [str(path)]

    def test_missing_base_returns_empty(self, tmp_path: Path) -> None:
        assert find_recent_files(tmp_path / "absent", max_depth=4, limit=3) == []


class TestTailerManager:
    """Tests for tailer reconciliation."""

    def test_refresh_uses_agent_patterns(self, log_dir: Path, clock) -> None:
        _touch(log_dir / "rollout.jsonl", 1000)
        _touch(log_dir / "server.log", 2000)

        manager = TailerManager(log_dir, max_files=3, max_depth=4, patterns=("*.jsonl",), clock=clock)

        assert [Path(p).name for p in manager.refresh_files()] == ["rollout.jsonl"]
        manager.close()

    def test_refresh_tracks_newest_files(self, log_dir: Path, clock) -> None:
        _touch(log_dir / "a.jsonl", 1000)
        _touch(log_dir / "b.jsonl", 2000)
        _touch(log_dir / "c.jsonl", 3000)

        manager = TailerManager(log_dir, max_files=2, max_depth=4, clock=clock)
        paths = manager.refresh_files()

        assert [Path(p).name for p in paths] == ["c.jsonl", "b.jsonl"]
        manager.close()

    def test_lines_appended_after_discovery_are_read(self, log_dir: Path, clock) -> None:
        """Test that a discovered file is tailed from its size at discovery time."""
        path = log_dir / "a.jsonl"
        _touch(path, 1000)
        manager = TailerManager(log_dir, max_files=3, max_depth=4, clock=clock)
        manager.refresh_files(force=True)

        _append(path, "new\n")

        assert manager.read_all_new() == {str(path): ["new"]}
        manager.close()

    def test_scan_cache_until_ttl(self, log_dir: Path, clock) -> None:
        """Test that rescans within the TTL reuse the previous result."""
        _touch(log_dir / "a.jsonl", 1000)
        manager = TailerManager(log_dir, max_files=3, max_depth=4, clock=clock)
        manager.refresh_files()

        _touch(log_dir / "b.jsonl", 2000)
        assert len(manager.refresh_files()) == 1
        assert len(manager.refresh_files(force=True)) == 2

        _touch(log_dir / "c.jsonl", 3000)
        clock.advance(6)
        assert len(manager.refresh_files()) == 3
        manager.close()

    def test_existing_tailer_position_is_kept(self, log_dir: Path, clock) -> None:
        """Test that reconciliation does not recreate surviving tailers."""
        path = log_dir / "a.jsonl"
        _touch(path, 1000)
        manager = TailerManager(log_dir, max_files=3, max_depth=4, clock=clock)
        manager.refresh_files()
        manager.read_all_new()

        _append(path, "fresh\n")
        _touch(log_dir / "b.jsonl", 500)
        manager.refresh_files(force=True)

        assert manager.read_all_new() == {str(path): ["fresh"]}
        manager.close()

    def test_read_all_new_skips_failed_tailer(self, log_dir: Path, clock) -> None:
        keep = log_dir / "keep.jsonl"
        gone = log_dir / "gone.jsonl"
        _touch(keep, 2000)
        _touch(gone, 1000)
        manager = TailerManager(log_dir, max_files=3, max_depth=4, clock=clock)
        manager.refresh_files()
        manager.read_all_new()

        gone.unlink()
        _append(keep, "still here\n")

        assert manager.read_all_new() == {str(keep): ["still here"]}
        manager.close()

    def test_missing_base_path_warns_once(self, tmp_path: Path, clock, caplog) -> None:
        base = tmp_path / "later"
        manager = TailerManager(base, max_files=3, max_depth=4, clock=clock)

        with caplog.at_level("WARNING", logger="firebell.monitoring.tailer"):
            manager.refresh_files(force=True)
            manager.refresh_files(force=True)

        assert sum("does not exist" in r.getMessage() for r in caplog.records) == 1
        assert manager.paths == []

    def test_owns(self, log_dir: Path, tmp_path: Path) -> None:
        manager = TailerManager(log_dir, max_files=3, max_depth=4)

        assert manager.owns(log_dir / "sub" / "x.jsonl")
        assert manager.owns(log_dir)
        assert not manager.owns(tmp_path / "agent_logs_other" / "x.jsonl")


class TestBufferPool:
    """Tests for the read buffer pool."""

    def test_buffer_is_reused(self) -> None:
        buf = get_buffer()
        assert len(buf) == DEFAULT_BUFFER_SIZE

        put_buffer(buf)

        assert get_buffer() is buf

    def test_wrong_size_buffer_is_dropped(self) -> None:
        small = bytearray(10)
        put_buffer(small)
        put_buffer(None)

        buf = get_buffer()
        assert buf is not small
        assert len(buf) == DEFAULT_BUFFER_SIZE
