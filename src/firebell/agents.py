"""Registry of supported AI CLI agents.

The registry is populated once at import time and treated as read-only
afterwards, so lookups need no locking.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from pathlib import Path

logger = logging.getLogger(__name__)

LOG_EXTENSIONS = frozenset({".log", ".txt", ".json", ".jsonl"})

# Window used by auto-detection
ACTIVE_WINDOW_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class Agent:
    """Static descriptor of a supported AI CLI.

    Attributes:
        name: Internal lowercase name, unique key in the registry.
        display_name: Human-readable name used in notifications.
        log_path: Default log location (may start with ``~``).
        log_patterns: Glob patterns of the agent's log files.
        process_names: Candidate OS process names for PID detection.
    """

    name: str
    display_name: str
    log_path: str
    log_patterns: tuple[str, ...] = ()
    process_names: tuple[str, ...] = ()


REGISTRY: Mapping[str, Agent] = {
    "claude": Agent(
        name="claude",
        display_name="Claude Code",
        log_path="~/.claude/projects",
        log_patterns=("*.jsonl",),
        process_names=("claude", "claude-code"),
    ),
    "codex": Agent(
        name="codex",
        display_name="Codex",
        log_path="~/.codex/sessions",
        log_patterns=("*.jsonl", "*.json"),
        process_names=("codex",),
    ),
    "copilot": Agent(
        name="copilot",
        display_name="GitHub Copilot",
        log_path="~/.copilot/session-state",
        log_patterns=("*.jsonl",),
        process_names=("copilot",),
    ),
    "gemini": Agent(
        name="gemini",
        display_name="Google Gemini",
        log_path="~/.gemini/tmp",
        log_patterns=("*.json",),
        process_names=("gemini",),
    ),
    "opencode": Agent(
        name="opencode",
        display_name="OpenCode",
        log_path="~/.opencode/logs",
        log_patterns=("*.log",),
        process_names=("opencode",),
    ),
}


def get_agent(name: str) -> Agent | None:
    """Return the registered agent for ``name`` (case-insensitive)."""
    return REGISTRY.get(name.strip().lower())


def all_agent_names() -> list[str]:
    """Return the names of all supported agents, sorted."""
    return sorted(REGISTRY)


def get_agents(names: Iterable[str] | None = None) -> list[Agent]:
    """Resolve agent names to descriptors.

    Unknown names are skipped with a warning. An empty or missing filter
    falls back to auto-detection.
    """
    names = list(names or [])
    if not names:
        return detect_active_agents()

    agents: list[Agent] = []
    for name in names:
        agent = get_agent(name)
        if agent is None:
            logger.warning(f"Unknown agent '{name}', skipping")
            continue
        agents.append(agent)
    return agents


def with_log_path(agent: Agent, path: str | None) -> Agent:
    """Return a copy of ``agent`` whose log path is overridden by ``path``."""
    if not path:
        return agent
    return replace(agent, log_path=path)


def has_log_extension(path: str | Path) -> bool:
    """Check whether a file has one of the recognised log extensions."""
    return Path(path).suffix.lower() in LOG_EXTENSIONS


def matches_log_patterns(path: str | Path, patterns: Sequence[str] = ()) -> bool:
    """Check a file name against the log extensions and an agent's glob patterns.

    An empty ``patterns`` sequence accepts every file with a log extension.
    """
    name = Path(path).name
    if not has_log_extension(name):
        return False
    return not patterns or any(fnmatch.fnmatch(name, pattern) for pattern in patterns)


def expand_path(path: str) -> str:
    """Expand a leading ``~`` to the user's home directory."""
    if not path.startswith("~"):
        return path
    return os.path.expanduser(path)


def newest_log_mtime(path: str | Path, patterns: Sequence[str] = ()) -> float | None:
    """Return the newest modification time of a log file under ``path``.

    ``path`` may be a single file or a directory; files in a directory must
    match ``patterns``. Returns None when no log file is found.
    """
    base = Path(path)
    try:
        if base.is_file():
            return base.stat().st_mtime
    except OSError:
        return None

    newest: float | None = None
    for root, _dirs, files in os.walk(base):
        for name in files:
            if not matches_log_patterns(name, patterns):
                continue
            try:
                mtime = os.stat(os.path.join(root, name)).st_mtime
            except OSError:
                continue
            if newest is None or mtime > newest:
                newest = mtime
    return newest


def detect_active_agents(within: float = ACTIVE_WINDOW_SECONDS) -> list[Agent]:
    """Find agents whose logs were modified within ``within`` seconds."""
    active: list[Agent] = []
    for name in all_agent_names():
        agent = REGISTRY[name]
        expanded = expand_path(agent.log_path)
        if not os.path.exists(expanded):
            continue
        newest = newest_log_mtime(expanded, agent.log_patterns)
        if newest is not None and time.time() - newest < within:
            active.append(agent)

    logger.debug(f"Auto-detected agents: {[a.name for a in active]}")
    return active


def get_process_candidates(agents: Iterable[Agent]) -> list[str]:
    """Return the de-duplicated union of process names, first seen first."""
    seen: set[str] = set()
    candidates: list[str] = []
    for agent in agents:
        for name in agent.process_names:
            if name not in seen:
                seen.add(name)
                candidates.append(name)
    return candidates


def derive_instance_display_name(agent_name: str, file_path: str) -> str:
    """Build a human-readable name for one log-file instance.

    Claude Code stores each project's sessions in a hashed directory
    (``~/.claude/projects/<hash>/<session>.jsonl``), so the directory name
    identifies the instance. Other agents use the log file's stem.
    """
    path = Path(file_path)
    parent = path.parent.name

    if agent_name == "claude" and parent not in ("projects", ".claude", ""):
        return f"Claude Code ({parent[:8]})"

    agent = get_agent(agent_name)
    display = agent.display_name if agent else agent_name
    return f"{display} ({path.stem})"
