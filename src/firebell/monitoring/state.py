"""Lifecycle state table and quiet-period inference.

The State table is the only owner of per-session records. Every mutation
goes through one of its methods under a single lock, and every accessor
hands out a copy so callers can never bypass the cue invariants:

- a weak ACTIVITY cue never replaces a pending COMPLETE or HOLDING cue;
- a new cue always re-arms the quiet notification, which then fires at
  most once.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from ..agents import Agent, derive_instance_display_name
from .models import AgentState, CueRecord, InstanceState, MatchType, ProcessState, ProcSample

logger = logging.getLogger(__name__)

# Stored cue types an ACTIVITY cue may overwrite
_WEAK_OVERWRITABLE = (None, MatchType.ACTIVITY, MatchType.AWAITING)


class State:
    """In-memory table of per-agent or per-instance lifecycle state.

    The tracking mode is fixed at construction. In per-agent mode cue keys
    are agent names; in per-instance mode they are log file paths.

    Attributes:
        per_instance: Whether cues are tracked per log file.
    """

    def __init__(self, per_instance: bool = False, clock: Callable[[], float] = time.monotonic):
        """Initialize state table.

        Args:
            per_instance: Track each log file as its own session.
            clock: Monotonic time source in seconds.
        """
        self.per_instance = per_instance
        self._clock = clock
        self._lock = threading.Lock()
        self._agents: dict[str, AgentState] = {}
        self._instances: dict[str, InstanceState] = {}
        self._process = ProcessState()

    # ------------------------------------------------------------------
    # Agents and instances

    def add_agent(self, agent: Agent) -> None:
        """Register an agent. Re-adding an agent keeps its existing record."""
        with self._lock:
            if agent.name not in self._agents:
                self._agents[agent.name] = AgentState(agent=agent)

    def get_agent(self, name: str) -> AgentState | None:
        with self._lock:
            state = self._agents.get(name)
            return _copy_agent(state) if state else None

    def get_agent_by_path(self, path: str) -> AgentState | None:
        """Find the agent currently watching ``path``."""
        with self._lock:
            for state in self._agents.values():
                if path in state.watched_paths:
                    return _copy_agent(state)
            return None

    def all_agents(self) -> list[AgentState]:
        with self._lock:
            return [_copy_agent(s) for s in self._agents.values()]

    def update_watched_paths(self, name: str, paths: list[str]) -> None:
        with self._lock:
            state = self._agents.get(name)
            if state is not None:
                state.watched_paths = list(paths)

    def get_or_create_instance(self, agent_name: str, file_path: str) -> InstanceState:
        """Return the instance record for ``file_path``, creating it on first use."""
        with self._lock:
            state = self._instances.get(file_path)
            if state is None:
                state = InstanceState(
                    agent_name=agent_name,
                    file_path=file_path,
                    display_name=derive_instance_display_name(agent_name, file_path),
                )
                self._instances[file_path] = state
                logger.debug(f"Tracking instance {state.display_name} ({file_path})")
            return replace(state)

    def get_instance(self, file_path: str) -> InstanceState | None:
        with self._lock:
            state = self._instances.get(file_path)
            return replace(state) if state else None

    def all_instances(self) -> list[InstanceState]:
        with self._lock:
            return [replace(s) for s in self._instances.values()]

    def keys(self) -> list[str]:
        """Cue keys for the active tracking mode."""
        with self._lock:
            return list(self._instances if self.per_instance else self._agents)

    def display_name(self, key: str) -> str:
        """Human-readable name for a cue key."""
        with self._lock:
            record = self._record(key)
            if isinstance(record, AgentState):
                return record.display_name
            if isinstance(record, InstanceState):
                return record.display_name
            return key

    # ------------------------------------------------------------------
    # Cues

    def _record(self, key: str) -> CueRecord | None:
        if self.per_instance:
            return self._instances.get(key)
        return self._agents.get(key)

    def record_cue(self, key: str, cue_type: MatchType) -> None:
        """Record a classified cue for ``key``.

        The timestamp is always refreshed and the quiet flag cleared. The
        stored type only changes for a strong cue, or for ACTIVITY when no
        strong COMPLETE/HOLDING cue is pending.
        """
        with self._lock:
            record = self._record(key)
            if record is None:
                logger.debug(f"Ignoring cue for unknown key {key}")
                return

            record.last_cue = self._clock()
            record.quiet_notified = False

            if cue_type.is_strong or record.last_cue_type in _WEAK_OVERWRITABLE:
                record.last_cue_type = cue_type

    def should_send_quiet(self, key: str, quiet_seconds: float) -> bool:
        """Whether the quiet notification for the current cue is due."""
        with self._lock:
            record = self._record(key)
            if record is None or record.last_cue is None or record.quiet_notified:
                return False
            return self._clock() - record.last_cue >= quiet_seconds

    def mark_quiet_notified(self, key: str) -> None:
        with self._lock:
            record = self._record(key)
            if record is not None:
                record.quiet_notified = True

    def get_cue_type(self, key: str) -> MatchType | None:
        with self._lock:
            record = self._record(key)
            return record.last_cue_type if record else None

    # ------------------------------------------------------------------
    # Process

    def set_pid(self, pid: int) -> None:
        """Start tracking a new process, discarding the previous process state."""
        with self._lock:
            self._process = ProcessState(pid=pid)

    def update_proc_sample(self, sample: ProcSample) -> None:
        with self._lock:
            self._process.last_sample = replace(sample)

    def mark_process_idle(self, since: float | None = None) -> None:
        with self._lock:
            if self._process.idle_since is None:
                self._process.idle_since = since if since is not None else self._clock()
            self._process.idle_notified = True

    def reset_process_idle(self) -> None:
        with self._lock:
            self._process.idle_since = None
            self._process.idle_notified = False

    def mark_process_exited(self) -> None:
        with self._lock:
            self._process.exit_notified = True

    def is_process_exit_notified(self) -> bool:
        with self._lock:
            return self._process.exit_notified

    def process_snapshot(self) -> ProcessState:
        with self._lock:
            snapshot = replace(self._process)
            if snapshot.last_sample is not None:
                snapshot.last_sample = replace(snapshot.last_sample)
            return snapshot

    # ------------------------------------------------------------------
    # Reporting

    def snapshot(self) -> dict[str, Any]:
        """Point-in-time view of all sessions for status reporting."""
        with self._lock:
            now = self._clock()
            records: list[CueRecord] = list(
                self._instances.values() if self.per_instance else self._agents.values()
            )
            sessions = []
            for record in records:
                assert isinstance(record, (AgentState, InstanceState))
                sessions.append(
                    {
                        "key": record.key,
                        "display_name": record.display_name,
                        "last_cue_type": record.last_cue_type.value if record.last_cue_type else None,
                        "seconds_since_cue": (
                            round(now - record.last_cue, 1) if record.last_cue is not None else None
                        ),
                        "quiet_notified": record.quiet_notified,
                    }
                )

            process = self._process
            return {
                "mode": "per_instance" if self.per_instance else "per_agent",
                "sessions": sessions,
                "process": {
                    "pid": process.pid,
                    "idle_notified": process.idle_notified,
                    "exit_notified": process.exit_notified,
                },
            }


def _copy_agent(state: AgentState) -> AgentState:
    return replace(state, watched_paths=list(state.watched_paths))
