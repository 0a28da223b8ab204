"""Configuration loading, defaults and validation.

The configuration lives in a YAML file (``~/.firebell/config.yaml`` by
default). Every setting has a default, so a missing file or a partial file
is valid. Unknown keys are ignored.
"""

from __future__ import annotations

import logging
import os
from dataclasses import MISSING, asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "~/.firebell/config.yaml"

NOTIFY_TYPES = ("slack", "stdout")
VERBOSITY_LEVELS = ("minimal", "normal", "verbose")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class SlackConfig:
    webhook: str = ""


@dataclass
class WebhookConfig:
    """One generic webhook endpoint.

    Attributes:
        url: Endpoint URL.
        events: Event types to deliver; empty or ``all`` means every event.
        headers: Extra HTTP headers.
        timeout: Request timeout in seconds.
    """

    url: str = ""
    events: list[str] = field(default_factory=list)
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float = 10.0


@dataclass
class NotifyConfig:
    type: str = "slack"
    slack: SlackConfig = field(default_factory=SlackConfig)
    webhooks: list[WebhookConfig] = field(default_factory=list)


@dataclass
class AgentsConfig:
    """Which agents to monitor. An empty ``enabled`` list auto-detects."""

    enabled: list[str] = field(default_factory=list)
    paths: dict[str, str] = field(default_factory=dict)


@dataclass
class MonitorConfig:
    process_tracking: bool = True
    completion_detection: bool = True
    quiet_seconds: int = 15
    per_instance: bool = True
    idle_cpu_threshold: float = 1.0
    idle_seconds: int = 60


@dataclass
class OutputConfig:
    verbosity: str = "normal"
    include_snippets: bool = True
    snippet_lines: int = 12


@dataclass
class EventsConfig:
    event_file: bool = True
    event_file_path: str = "~/.firebell/events.jsonl"
    event_file_max_size: int = 10 * 1024 * 1024  # 10MB


@dataclass
class LoggingConfig:
    level: str = "INFO"
    log_dir: str = "~/.firebell/logs"
    file_logging: bool = False


@dataclass
class AdvancedConfig:
    poll_interval_ms: int = 800
    max_recent_files: int = 3
    watch_depth: int = 4
    force_polling: bool = False


@dataclass
class Config:
    """Root configuration."""

    version: str = "2"
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)

    @property
    def poll_interval(self) -> float:
        """Poll interval in seconds."""
        return self.advanced.poll_interval_ms / 1000.0

    @property
    def quiet_duration(self) -> float:
        """Quiet period in seconds."""
        return float(self.monitor.quiet_seconds)

    def validate(self) -> None:
        """Check that the configuration is usable.

        Raises:
            ConfigError: On the first invalid field.
        """
        if self.notify.type not in NOTIFY_TYPES:
            raise ConfigError("notify.type", "must be 'slack' or 'stdout'")

        if self.notify.type == "slack" and not self.notify.slack.webhook:
            raise ConfigError(
                "notify.slack.webhook", "Slack webhook URL is required when type is 'slack'"
            )

        for i, hook in enumerate(self.notify.webhooks):
            if not hook.url:
                raise ConfigError(f"notify.webhooks[{i}].url", "is required")
            if hook.timeout <= 0:
                raise ConfigError(f"notify.webhooks[{i}].timeout", "must be positive")

        if self.output.verbosity not in VERBOSITY_LEVELS:
            raise ConfigError("output.verbosity", "must be 'minimal', 'normal', or 'verbose'")

        if self.advanced.poll_interval_ms < 100:
            raise ConfigError("advanced.poll_interval_ms", "must be at least 100ms")

        if self.advanced.max_recent_files < 1:
            raise ConfigError("advanced.max_recent_files", "must be at least 1")

        if self.advanced.watch_depth < 1:
            raise ConfigError("advanced.watch_depth", "must be at least 1")

        if self.monitor.quiet_seconds < 0:
            raise ConfigError("monitor.quiet_seconds", "cannot be negative")

        if self.logging.level.upper() not in LOG_LEVELS:
            raise ConfigError("logging.level", f"must be one of {', '.join(LOG_LEVELS)}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Config:
        """Build a configuration from parsed YAML, filling in defaults.

        Raises:
            ConfigError: If a value has the wrong type.
        """
        notify_data = _mapping(data.get("notify"), "notify")
        webhooks_data = notify_data.get("webhooks") or []
        if not isinstance(webhooks_data, list):
            raise ConfigError("notify.webhooks", "must be a list")

        notify = _section(
            NotifyConfig,
            {k: v for k, v in notify_data.items() if k not in ("slack", "webhooks")},
            "notify",
        )
        notify.slack = _section(SlackConfig, _mapping(notify_data.get("slack"), "notify.slack"), "notify.slack")
        notify.webhooks = [
            _section(WebhookConfig, _mapping(hook, f"notify.webhooks[{i}]"), f"notify.webhooks[{i}]")
            for i, hook in enumerate(webhooks_data)
        ]

        return cls(
            version=str(data.get("version", "2")),
            notify=notify,
            agents=_section(AgentsConfig, _mapping(data.get("agents"), "agents"), "agents"),
            monitor=_section(MonitorConfig, _mapping(data.get("monitor"), "monitor"), "monitor"),
            output=_section(OutputConfig, _mapping(data.get("output"), "output"), "output"),
            events=_section(EventsConfig, _mapping(data.get("events"), "events"), "events"),
            logging=_section(LoggingConfig, _mapping(data.get("logging"), "logging"), "logging"),
            advanced=_section(AdvancedConfig, _mapping(data.get("advanced"), "advanced"), "advanced"),
        )


def _mapping(value: Any, name: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(name, "must be a mapping")
    return value


def _section(cls: type, data: dict[str, Any], name: str) -> Any:
    """Instantiate a section dataclass from the known keys of ``data``."""
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data or data[f.name] is None:
            continue
        value = data[f.name]
        default = f.default if f.default is not MISSING else f.default_factory()  # type: ignore[misc]
        kwargs[f.name] = _coerce(value, default, f"{name}.{f.name}")
    return cls(**kwargs)


def _coerce(value: Any, default: Any, name: str) -> Any:
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigError(name, "must be true or false")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(name, "must be an integer")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(name, "must be a number")
        return float(value)
    if isinstance(default, str):
        if not isinstance(value, (str, int, float)) or isinstance(value, bool):
            raise ConfigError(name, "must be a string")
        return str(value)
    if isinstance(default, list):
        if not isinstance(value, list):
            raise ConfigError(name, "must be a list")
        return [str(v) for v in value]
    if isinstance(default, dict):
        if not isinstance(value, dict):
            raise ConfigError(name, "must be a mapping")
        return {str(k): str(v) for k, v in value.items()}
    return value


def config_path(path: str | Path | None = None) -> Path:
    """Resolve the configuration file path (``~`` expanded)."""
    return Path(path or DEFAULT_CONFIG_PATH).expanduser()


def load_config(path: str | Path | None = None) -> Config:
    """Load configuration from YAML, falling back to defaults.

    Args:
        path: Config file path (default ``~/.firebell/config.yaml``).

    Returns:
        The loaded configuration. It is not validated; call
        :meth:`Config.validate` after applying command line overrides.

    Raises:
        ConfigError: If the file cannot be parsed or holds wrongly typed values.
    """
    resolved = config_path(path)

    if not resolved.exists():
        logger.debug(f"No config file at {resolved}, using defaults")
        return Config()

    try:
        with open(resolved) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError("file", f"failed to parse {resolved}: {e}") from e
    except OSError as e:
        raise ConfigError("file", f"cannot read {resolved}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("file", f"{resolved} must contain a mapping")

    logger.debug(f"Loaded configuration from {resolved}")
    return Config.from_dict(data)


def save_config(config: Config, path: str | Path | None = None) -> Path:
    """Write ``config`` as YAML, readable by the owner only.

    Returns:
        The path written.
    """
    resolved = config_path(path)
    resolved.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

    content = yaml.safe_dump(config.to_dict(), sort_keys=False, default_flow_style=False)
    fd = os.open(resolved, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(content)
    os.chmod(resolved, 0o600)

    logger.debug(f"Saved configuration to {resolved}")
    return resolved
