"""Data models for the activity monitoring core.

This module defines the structures shared by the matchers, the state table
and the watcher: match signals, per-session state records and process
samples.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..agents import Agent


class MatchType(str, Enum):
    """Lifecycle signal extracted from a single log line.

    Attributes:
        ACTIVITY: The assistant is doing something; no turn boundary (weak).
        COMPLETE: The assistant finished producing a response (strong).
        HOLDING: The assistant is blocked on tool-use approval (strong).
        AWAITING: Explicit "ready for next input" marker (strong, rare).
    """

    ACTIVITY = "activity"
    COMPLETE = "complete"
    HOLDING = "holding"
    AWAITING = "awaiting"

    @property
    def is_strong(self) -> bool:
        """Whether this signal defines a lifecycle phase."""
        return self is not MatchType.ACTIVITY


@dataclass
class MatchSignal:
    """A classified log line.

    Attributes:
        agent: Name of the agent (or matcher) that produced the signal.
        type: Lifecycle signal kind.
        reason: Human-readable reason for the classification.
        line: The raw matched line.
        meta: Optional extracted metadata, e.g. ``{"tool": "Bash"}``.
    """

    agent: str
    type: MatchType
    reason: str
    line: str
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def tool(self) -> str | None:
        """Tool name extracted by the matcher, if any."""
        tool = self.meta.get("tool")
        return tool if isinstance(tool, str) else None


@dataclass
class CueRecord:
    """Quiet-period bookkeeping shared by agent and instance records.

    Attributes:
        last_cue: Monotonic timestamp of the last cue, None before the first.
        last_cue_type: Type of the last retained cue.
        quiet_notified: Whether the quiet notification for this cue was sent.
    """

    last_cue: float | None = None
    last_cue_type: MatchType | None = None
    quiet_notified: bool = False


@dataclass
class AgentState(CueRecord):
    """Per-agent monitoring state (per-agent mode)."""

    agent: Agent | None = None
    watched_paths: list[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return self.agent.name if self.agent else ""

    @property
    def display_name(self) -> str:
        return self.agent.display_name if self.agent else ""


@dataclass
class InstanceState(CueRecord):
    """Per-log-file monitoring state (per-instance mode)."""

    agent_name: str = ""
    file_path: str = ""
    display_name: str = ""

    @property
    def key(self) -> str:
        return self.file_path


@dataclass
class ProcSample:
    """Point-in-time resource snapshot of a process.

    Attributes:
        cpu_seconds: Cumulative user + system CPU time in seconds.
        wall: Wall-clock time (epoch seconds) when the sample was taken.
        rss_bytes: Resident set size in bytes.
        vms_bytes: Virtual memory size in bytes.
        state: OS run-state letter (R/S/D/Z/T/I, "?" when unknown).
    """

    cpu_seconds: float
    wall: float
    rss_bytes: int = 0
    vms_bytes: int = 0
    state: str = "?"


@dataclass
class ProcessState:
    """Monitored process bookkeeping kept in the state table."""

    pid: int = 0
    last_sample: ProcSample | None = None
    idle_since: float | None = None
    idle_notified: bool = False
    exit_notified: bool = False
