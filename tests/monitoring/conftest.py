"""Shared fixtures for monitoring tests."""

from pathlib import Path

import pytest


@pytest.fixture
def log_dir(tmp_path: Path) -> Path:
    """Create temporary agent log directory."""
    directory = tmp_path / "agent_logs"
    directory.mkdir()
    return directory


@pytest.fixture
def temp_log_file(log_dir: Path) -> Path:
    """Create temporary log file with initial content."""
    log_file = log_dir / "session.jsonl"
    log_file.write_text("Line 1\nLine 2\nLine 3\n")
    return log_file


@pytest.fixture
def empty_log_file(log_dir: Path) -> Path:
    """Create empty log file."""
    log_file = log_dir / "empty.jsonl"
    log_file.write_text("")
    return log_file
