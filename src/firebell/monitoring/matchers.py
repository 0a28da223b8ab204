"""Per-format line classification.

Each supported CLI writes a differently shaped log: Claude Code and Codex
write line-delimited JSON with nested payloads, Copilot writes JSON events
(and, in older releases, free text), Gemini writes pretty-printed JSON that
arrives one fragment per line, and OpenCode writes ``key=value`` text.

Every matcher classifies a single line into a :class:`MatchSignal` or
returns None. All matchers share the same policy: blank lines never match,
structured decoding is tried before substring heuristics, completion
markers map to COMPLETE, tool invocations map to HOLDING (with the tool
name in ``meta["tool"]``) and any other assistant output maps to ACTIVITY.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from collections.abc import Callable
from typing import Any, Protocol

from .models import MatchSignal, MatchType

logger = logging.getLogger(__name__)

DEFAULT_PATTERN = r"assistant_message|agent_message|responses/compact"


class Matcher(Protocol):
    """Classifies a single log line."""

    def match(self, line: str) -> MatchSignal | None: ...


def _parse_object(line: str) -> dict[str, Any] | None:
    """Decode ``line`` as a JSON object, returning None for anything else."""
    try:
        obj = json.loads(line)
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


def _first_name(items: Any, item_type: str | None = None) -> str | None:
    """Return the ``name`` of the first dict in ``items`` (optionally of a type)."""
    if not isinstance(items, list):
        return None
    for item in items:
        if not isinstance(item, dict):
            continue
        if item_type is not None and item.get("type") != item_type:
            continue
        name = item.get("name")
        if isinstance(name, str) and name:
            return name
        if item_type is not None:
            return None
    return None


def _signal(
    agent: str,
    match_type: MatchType,
    reason: str,
    line: str,
    tool: str | None = None,
) -> MatchSignal:
    meta: dict[str, Any] = {}
    if tool:
        meta["tool"] = tool
    return MatchSignal(agent=agent, type=match_type, reason=reason, line=line, meta=meta)


class ClaudeMatcher:
    """Claude Code session transcripts (JSONL).

    Only ``assistant`` entries are considered. ``stop_reason`` tells the
    turn state: ``end_turn`` finishes the turn, ``tool_use`` blocks on
    approval, and a missing value means the response is still streaming.
    """

    agent = "claude"

    def match(self, line: str) -> MatchSignal | None:
        if not line.strip():
            return None

        obj = _parse_object(line)
        if obj is None or obj.get("type") != "assistant":
            return None

        message = obj.get("message")
        if not isinstance(message, dict):
            return _signal(self.agent, MatchType.ACTIVITY, "assistant message", line)

        stop_reason = message.get("stop_reason")
        if stop_reason in ("end_turn", "stop_sequence"):
            return _signal(self.agent, MatchType.COMPLETE, "turn complete", line)

        if stop_reason == "tool_use":
            tool = _first_name(message.get("content"), item_type="tool_use")
            return _signal(self.agent, MatchType.HOLDING, "tool use requested", line, tool)

        return _signal(self.agent, MatchType.ACTIVITY, "assistant message", line)


class CodexMatcher:
    """Codex rollout files (JSONL ``response_item`` records)."""

    agent = "codex"

    _TOOL_CALL_TYPES = ("function_call", "custom_tool_call", "local_shell_call")

    def match(self, line: str) -> MatchSignal | None:
        if not line.strip():
            return None

        obj = _parse_object(line)
        if obj is None or obj.get("type") != "response_item":
            return None

        payload = obj.get("payload")
        if not isinstance(payload, dict):
            return None

        payload_type = payload.get("type")
        if payload_type in self._TOOL_CALL_TYPES:
            if payload_type == "local_shell_call":
                tool = "shell"
            else:
                name = payload.get("name")
                tool = name if isinstance(name, str) else None
            return _signal(self.agent, MatchType.HOLDING, "tool call", line, tool)

        if payload.get("role") != "assistant" or payload_type not in (None, "message"):
            return None

        content = payload.get("content")
        if isinstance(content, list) and any(
            isinstance(item, dict) and item.get("type") == "output_text" for item in content
        ):
            return _signal(self.agent, MatchType.COMPLETE, "assistant response", line)

        return _signal(self.agent, MatchType.ACTIVITY, "assistant message", line)


class CopilotMatcher:
    """GitHub Copilot CLI session events, plus the legacy text log."""

    agent = "copilot"

    _ACTIVITY_EVENTS = ("tool.execution_start", "user.message")

    def match(self, line: str) -> MatchSignal | None:
        if not line.strip():
            return None

        obj = _parse_object(line)
        if obj is None:
            if "chat/completions succeeded" in line:
                return _signal(self.agent, MatchType.COMPLETE, "completion success", line)
            return None

        event_type = obj.get("type")
        data = obj.get("data")
        if not isinstance(data, dict):
            data = {}

        if event_type == "assistant.turn_end":
            return _signal(self.agent, MatchType.COMPLETE, "turn end", line)

        if event_type == "assistant.message":
            requests = data.get("toolRequests")
            if isinstance(requests, list) and requests:
                tool = _first_name(requests)
                return _signal(self.agent, MatchType.HOLDING, "tool request", line, tool)
            return _signal(self.agent, MatchType.ACTIVITY, "assistant message", line)

        if event_type in self._ACTIVITY_EVENTS:
            return _signal(self.agent, MatchType.ACTIVITY, event_type, line)

        return None


# Built-in Gemini CLI tools
GEMINI_TOOLS = frozenset(
    {
        "run_shell_command",
        "read_file",
        "read_many_files",
        "write_file",
        "replace",
        "list_directory",
        "glob",
        "search_file_content",
        "web_fetch",
        "google_web_search",
        "save_memory",
    }
)

_GEMINI_TYPE_RE = re.compile(r'"type"\s*:\s*"gemini"')
_GEMINI_NAME_RE = re.compile(r'"name"\s*:\s*"([^"]+)"')
_GEMINI_TOOL_CALLS_RE = re.compile(r'"toolCalls"\s*:\s*\[')


class GeminiMatcher:
    """Gemini CLI chat files.

    The files are pretty-printed JSON, so the tailer usually sees one
    fragment per line. Whole objects are decoded when a line happens to
    hold one; otherwise fragments are recognised by their key/value text.
    """

    agent = "gemini"

    def match(self, line: str) -> MatchSignal | None:
        stripped = line.strip()
        if not stripped:
            return None

        obj = _parse_object(stripped.rstrip(","))
        if obj is not None:
            if obj.get("type") != "gemini":
                return None
            calls = obj.get("toolCalls")
            if isinstance(calls, list) and calls:
                return _signal(
                    self.agent, MatchType.HOLDING, "tool call", line, _first_name(calls)
                )
            return _signal(self.agent, MatchType.COMPLETE, "gemini response", line)

        if _GEMINI_TYPE_RE.search(stripped):
            return _signal(self.agent, MatchType.COMPLETE, "gemini response", line)

        name = _GEMINI_NAME_RE.search(stripped)
        if name and name.group(1) in GEMINI_TOOLS:
            return _signal(self.agent, MatchType.HOLDING, "tool call", line, name.group(1))

        if _GEMINI_TOOL_CALLS_RE.search(stripped):
            return _signal(self.agent, MatchType.ACTIVITY, "tool calls", line)

        return None


_KV_RE = re.compile(r'([A-Za-z_][\w.]*)=("[^"]*"|\S+)')


def _parse_fields(line: str) -> dict[str, str]:
    return {key.lower(): value.strip('"') for key, value in _KV_RE.findall(line)}


class OpenCodeMatcher:
    """OpenCode service logs (``key=value`` text)."""

    agent = "opencode"

    def match(self, line: str) -> MatchSignal | None:
        if not line.strip():
            return None

        lower = line.lower()
        fields = _parse_fields(line)

        if "permission" in lower or "approval" in lower:
            tool = fields.get("tool") or fields.get("permission")
            return _signal(self.agent, MatchType.HOLDING, "permission requested", line, tool)

        if (
            "session.idle" in lower
            or fields.get("finish") == "stop"
            or ("session" in lower and "completed" in lower)
        ):
            return _signal(self.agent, MatchType.COMPLETE, "session idle", line)

        if any(marker in lower for marker in ("assistant", "message", "tool", "stream")):
            return _signal(self.agent, MatchType.ACTIVITY, "assistant activity", line)

        return None


class RegexMatcher:
    """Classifies any line matching a regular expression as ACTIVITY."""

    def __init__(self, agent: str, pattern: str = DEFAULT_PATTERN):
        self.agent = agent
        self.pattern = re.compile(pattern)

    def match(self, line: str) -> MatchSignal | None:
        if not line.strip():
            return None
        if self.pattern.search(line):
            return _signal(self.agent, MatchType.ACTIVITY, "regex match", line)
        return None


_GENERIC_FIELDS = ("status", "type", "role", "finish_reason", "stop_reason")

_HOLDING_VALUES = frozenset(
    {
        "tool_use",
        "tool_calls",
        "function_call",
        "requires_action",
        "requires_approval",
        "awaiting_approval",
        "waiting_for_approval",
        "pending_approval",
        "permission",
    }
)
_COMPLETE_VALUES = frozenset(
    {"end_turn", "stop", "stop_sequence", "complete", "completed", "done", "finished", "success"}
)
_ACTIVITY_VALUES = frozenset(
    {"assistant", "running", "in_progress", "thinking", "streaming", "working", "processing"}
)

_HOLDING_KEYWORDS = re.compile(
    r"waiting for (?:confirmation|approval|permission)"
    r"|requires? (?:approval|confirmation)"
    r"|permission (?:required|requested)"
    r"|approve\?|allow this|\[y/n\]|\(y/n\)"
    r"|tool_use|function_call"
)
_COMPLETE_KEYWORDS = re.compile(
    r"task complete|response complete|end_turn|\bcompleted\b|\bfinished\b|\bdone\b"
)
_ACTIVITY_KEYWORDS = re.compile(
    r"assistant|agent_message|thinking|generating|working on|\brunning\b"
)


class GenericMatcher:
    """Fallback for agents without a dedicated matcher.

    Common JSON status fields are inspected first (including OpenAI style
    ``choices[0].finish_reason``). Lines that carry none of them are scanned
    for keywords. In both stages HOLDING beats COMPLETE beats ACTIVITY, so a
    line saying both "waiting for approval" and "done" is HOLDING.
    """

    def __init__(self, agent: str = "generic"):
        self.agent = agent

    def match(self, line: str) -> MatchSignal | None:
        if not line.strip():
            return None

        obj = _parse_object(line)
        if obj is not None:
            if obj.get("role") == "user":
                return None
            signal = self._match_fields(obj, line)
            if signal is not None:
                return signal

        return self._match_keywords(line)

    def _match_fields(self, obj: dict[str, Any], line: str) -> MatchSignal | None:
        values: list[str] = []
        for key in _GENERIC_FIELDS:
            value = obj.get(key)
            if isinstance(value, str):
                values.append(value.lower())

        choices = obj.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            finish = choices[0].get("finish_reason")
            if isinstance(finish, str):
                values.append(finish.lower())

        if any(v in _HOLDING_VALUES for v in values):
            return _signal(self.agent, MatchType.HOLDING, "tool approval", line)
        if any(v in _COMPLETE_VALUES for v in values):
            return _signal(self.agent, MatchType.COMPLETE, "completion status", line)
        if any(v in _ACTIVITY_VALUES for v in values):
            return _signal(self.agent, MatchType.ACTIVITY, "assistant status", line)
        return None

    def _match_keywords(self, line: str) -> MatchSignal | None:
        lower = line.lower()
        if _HOLDING_KEYWORDS.search(lower):
            return _signal(self.agent, MatchType.HOLDING, "approval keyword", line)
        if _COMPLETE_KEYWORDS.search(lower):
            return _signal(self.agent, MatchType.COMPLETE, "completion keyword", line)
        if _ACTIVITY_KEYWORDS.search(lower):
            return _signal(self.agent, MatchType.ACTIVITY, "activity keyword", line)
        return None


class ComboMatcher:
    """Tries several matchers in order and returns the first hit."""

    def __init__(self, *matchers: Matcher):
        self.matchers = list(matchers)

    def match(self, line: str) -> MatchSignal | None:
        for matcher in self.matchers:
            signal = matcher.match(line)
            if signal is not None:
                return signal
        return None


MatcherFactory = Callable[[], Matcher]

_registry_lock = threading.Lock()
_REGISTRY: dict[str, MatcherFactory] = {
    "claude": ClaudeMatcher,
    "codex": lambda: ComboMatcher(CodexMatcher(), RegexMatcher("codex")),
    "copilot": lambda: ComboMatcher(CopilotMatcher(), RegexMatcher("copilot")),
    "gemini": GeminiMatcher,
    "opencode": lambda: ComboMatcher(OpenCodeMatcher(), GenericMatcher("opencode")),
}


def register_matcher(name: str, factory: MatcherFactory) -> None:
    """Register (or replace) the matcher factory for an agent name."""
    with _registry_lock:
        _REGISTRY[name.lower()] = factory
    logger.debug(f"Registered matcher for {name}")


def create_matcher(agent_name: str) -> Matcher:
    """Build the matcher for ``agent_name``.

    Unregistered names get a :class:`GenericMatcher`.
    """
    with _registry_lock:
        factory = _REGISTRY.get(agent_name.lower())
    if factory is None:
        logger.debug(f"No dedicated matcher for {agent_name}, using generic")
        return GenericMatcher(agent_name)
    return factory()


def wrapped_command_matcher(name: str = "wrapped") -> Matcher:
    """Matcher for the output of an arbitrary wrapped command."""
    return ComboMatcher(
        ClaudeMatcher(),
        CodexMatcher(),
        CopilotMatcher(),
        RegexMatcher(name),
        GenericMatcher(name),
    )
