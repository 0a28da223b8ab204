"""Command line interface.

Subcommands::

    firebell [run] [--agent NAME] [--stdout] [--verbose] [--poll]
    firebell check
    firebell events [-n N]
    firebell webhook-test URL
    firebell wrap [--name NAME] -- command args...

Running ``firebell`` without a subcommand is the same as ``firebell run``.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal
import sys
import time
from collections.abc import Sequence

from . import __version__
from .agents import REGISTRY, Agent, expand_path, get_agent, get_agents
from .config import Config, load_config
from .errors import ConfigError, FirebellError, NotificationError, WatcherError
from .logging_manager import LoggingManager
from .monitoring.tailer import find_recent_files
from .monitoring.watcher import Watcher
from .notify import count_by_type, create_notifier, find_event_file, read_events, test_webhook
from .notify.base import Notifier
from .wrap.runner import Runner

logger = logging.getLogger(__name__)

COMMANDS = ("run", "check", "events", "webhook-test", "wrap")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="firebell",
        description="Notifications for AI coding-assistant CLI activity.",
    )
    parser.add_argument("--version", action="version", version=f"firebell {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Monitor agent logs (default)")
    run.add_argument("--config", help="Config file path (default ~/.firebell/config.yaml)")
    run.add_argument(
        "--agent",
        action="append",
        default=[],
        help="Agent to monitor; repeat or comma-separate (default: config, then auto-detect)",
    )
    run.add_argument("--stdout", action="store_true", help="Print notifications to stdout")
    run.add_argument("--verbose", action="store_true", help="Notify on every activity")
    run.add_argument("--poll", action="store_true", help="Poll instead of filesystem events")
    run.add_argument("--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)")

    check = subparsers.add_parser("check", help="Show agent log locations and recent activity")
    check.add_argument("--config", help="Config file path")

    events = subparsers.add_parser("events", help="Show recent events from the event file")
    events.add_argument("--config", help="Config file path")
    events.add_argument("-n", type=int, default=20, help="Number of events to show (default 20)")

    webhook = subparsers.add_parser("webhook-test", help="Send a test event to a webhook URL")
    webhook.add_argument("url", help="Webhook URL")
    webhook.add_argument(
        "--header", action="append", default=[], help="Extra header as 'Name: value'"
    )
    webhook.add_argument("--timeout", type=float, default=10.0, help="Timeout in seconds")

    wrap = subparsers.add_parser("wrap", help="Run a command and monitor its output")
    wrap.add_argument("--config", help="Config file path")
    wrap.add_argument("--name", default="", help="Display name in notifications")
    wrap.add_argument("--stdout", action="store_true", help="Print notifications to stdout")
    wrap.add_argument("--verbose", action="store_true", help="Notify on every activity")
    wrap.add_argument("cmd", nargs=argparse.REMAINDER, help="Command to run (after --)")

    return parser


def _split_agents(values: Sequence[str]) -> list[str]:
    names: list[str] = []
    for value in values:
        names.extend(part.strip() for part in value.split(",") if part.strip())
    return names


def _close_notifier(notifier: Notifier) -> None:
    close = getattr(notifier, "close", None)
    if callable(close):
        close()


def cmd_run(args: argparse.Namespace) -> int:
    try:
        config = load_config(args.config)
        if args.stdout:
            config.notify.type = "stdout"
        if args.verbose:
            config.output.verbosity = "verbose"
        if args.log_level:
            config.logging.level = args.log_level.upper()
        config.validate()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    LoggingManager(config.logging.log_dir, config.logging.level, config.logging.file_logging)

    names = _split_agents(args.agent) or list(config.agents.enabled)
    unknown = [name for name in names if get_agent(name) is None]
    if unknown:
        print(f"Error: unknown agent(s): {', '.join(unknown)}", file=sys.stderr)
        print(f"Supported agents: {', '.join(sorted(REGISTRY))}", file=sys.stderr)
        return 1

    agents = get_agents(names)
    if not agents:
        print(
            "Error: no active agents found. Use --agent to choose one explicitly.",
            file=sys.stderr,
        )
        return 1

    try:
        notifier = create_notifier(config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    poll = args.poll or config.advanced.force_polling
    return asyncio.run(_run_watcher(config, notifier, agents, poll))


async def _run_watcher(config: Config, notifier: Notifier, agents: list[Agent], poll: bool) -> int:
    watcher = Watcher(config, notifier, agents)
    event_file = find_event_file(notifier)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, watcher.stop)

    if event_file is not None:
        try:
            event_file.emit_daemon_start()
        except NotificationError as e:
            logger.warning(f"Could not write daemon start event: {e}")

    print(
        f"firebell {__version__}: monitoring {', '.join(a.display_name for a in agents)} "
        f"(notify: {notifier.name}, mode: {'polling' if poll else 'events'})"
    )

    exit_code = 0
    try:
        await watcher.run(poll=poll)
    except WatcherError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Try again with --poll to use polling mode.", file=sys.stderr)
        exit_code = 1
    finally:
        watcher.close()
        if event_file is not None:
            try:
                event_file.emit_daemon_stop()
            except NotificationError as e:
                logger.warning(f"Could not write daemon stop event: {e}")
        _close_notifier(notifier)

    return exit_code


def _format_age(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.0f}s ago"
    if seconds < 3600:
        return f"{seconds / 60:.0f}m ago"
    if seconds < 86400:
        return f"{seconds / 3600:.1f}h ago"
    return f"{seconds / 86400:.1f}d ago"


def cmd_check(args: argparse.Namespace) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    now = time.time()
    for name in sorted(REGISTRY):
        agent = REGISTRY[name]
        path = expand_path(config.agents.paths.get(name) or agent.log_path)
        files = find_recent_files(path, config.advanced.watch_depth, 0, agent.log_patterns)

        print(f"{agent.display_name} ({name})")
        print(f"  path:   {path}")
        if not files and not os.path.exists(path):
            print("  status: not found")
            continue
        print(f"  files:  {len(files)}")
        if files:
            print(f"  newest: {files[0].path} ({_format_age(now - files[0].mtime)})")
    return 0


def cmd_events(args: argparse.Namespace) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    events = read_events(config.events.event_file_path, max(args.n, 0))
    if not events:
        print(f"No events in {expand_path(config.events.event_file_path)}")
        return 0

    for event in events:
        parts = [event.timestamp.strftime("%Y-%m-%d %H:%M:%S"), f"{event.event.value:<13}"]
        if event.agent:
            parts.append(event.agent)
        if event.title:
            parts.append(event.title)
        if event.message:
            parts.append(f"- {event.message}")
        print("  ".join(parts))

    print()
    for event_type, count in sorted(count_by_type(events).items()):
        print(f"{event_type}: {count}")
    return 0


def _parse_headers(values: Sequence[str]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for value in values:
        name, sep, header_value = value.partition(":")
        if not sep or not name.strip():
            raise ValueError(f"invalid header '{value}', expected 'Name: value'")
        headers[name.strip()] = header_value.strip()
    return headers


def cmd_webhook_test(args: argparse.Namespace) -> int:
    try:
        headers = _parse_headers(args.header)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Sending test event to {args.url} ...")
    try:
        asyncio.run(test_webhook(args.url, headers=headers, timeout=args.timeout))
    except NotificationError as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    print("Success: webhook accepted the test event")
    return 0


def cmd_wrap(args: argparse.Namespace) -> int:
    command = list(args.cmd)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        print("Error: no command specified. Usage: firebell wrap -- command args...", file=sys.stderr)
        return 1

    try:
        config = load_config(args.config)
        if args.stdout:
            config.notify.type = "stdout"
        if args.verbose:
            config.output.verbosity = "verbose"
        config.validate()
        notifier = create_notifier(config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    LoggingManager(config.logging.log_dir, config.logging.level, config.logging.file_logging)

    runner = Runner(config, notifier, name=args.name)
    try:
        return asyncio.run(runner.run(command))
    except FirebellError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        _close_notifier(notifier)


_HANDLERS = {
    "run": cmd_run,
    "check": cmd_check,
    "events": cmd_events,
    "webhook-test": cmd_webhook_test,
    "wrap": cmd_wrap,
}


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point of the ``firebell`` console script."""
    arguments = list(sys.argv[1:] if argv is None else argv)
    if not arguments or arguments[0] not in (*COMMANDS, "-h", "--help", "--version"):
        arguments.insert(0, "run")

    args = build_parser().parse_args(arguments)
    try:
        return _HANDLERS[args.command](args)
    except KeyboardInterrupt:
        return 130
