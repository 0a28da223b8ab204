"""Notifier protocol and message formatting."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .models import Notification

# Snippet length in "normal" verbosity
NORMAL_SNIPPET_LIMIT = 500


@runtime_checkable
class Notifier(Protocol):
    """Delivers notifications to one destination.

    ``send`` raises :class:`~firebell.errors.NotificationError` on failure.
    """

    @property
    def name(self) -> str: ...

    async def send(self, notification: Notification) -> None: ...


def truncate(text: str, max_len: int) -> str:
    """Cut ``text`` to ``max_len`` characters, ending with ``...`` when cut."""
    if len(text) <= max_len:
        return text
    if max_len > 3:
        return text[: max_len - 3] + "..."
    return text[:max_len]


def format_notification(
    notification: Notification, verbosity: str = "normal", include_snippet: bool = True
) -> str:
    """Render a notification as Slack-flavoured markdown.

    ``minimal`` shows only the header; ``normal`` adds the message and a
    snippet of at most 500 characters; ``verbose`` adds the full snippet.
    """
    parts: list[str] = []
    if notification.agent:
        parts.append(f"*{notification.agent}* | {notification.title}\n")
    else:
        parts.append(f"*{notification.title}*\n")

    if verbosity == "minimal":
        return "".join(parts)

    if notification.message:
        parts.append(notification.message + "\n")

    if include_snippet and notification.snippet:
        snippet = notification.snippet
        if verbosity != "verbose":
            snippet = truncate(snippet, NORMAL_SNIPPET_LIMIT)
        parts.append(f"```\n{snippet}\n```")

    return "".join(parts)
