"""Activity monitoring core.

Log tailing, per-format line matching, lifecycle state and the watcher
loop that turns log activity into notifications.
"""

from .matchers import (
    ComboMatcher,
    GenericMatcher,
    Matcher,
    RegexMatcher,
    create_matcher,
    register_matcher,
    wrapped_command_matcher,
)
from .models import AgentState, InstanceState, MatchSignal, MatchType, ProcessState, ProcSample
from .process_monitor import ProcessMonitor
from .state import State
from .tailer import Tailer, TailerManager, find_recent_files, tail_snippet
from .watcher import Watcher, quiet_sweep_notification

__all__ = [
    "AgentState",
    "ComboMatcher",
    "GenericMatcher",
    "InstanceState",
    "MatchSignal",
    "MatchType",
    "Matcher",
    "ProcSample",
    "ProcessMonitor",
    "ProcessState",
    "RegexMatcher",
    "State",
    "Tailer",
    "TailerManager",
    "Watcher",
    "create_matcher",
    "find_recent_files",
    "quiet_sweep_notification",
    "register_matcher",
    "tail_snippet",
    "wrapped_command_matcher",
]
