"""Slash-command recognition and shared help text."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

COMMAND_PREFIX = "/"
_IMAGE_COMMAND = "/image"
_CLEAR_ALIASES = {"/clear"}


@dataclass(frozen=True)
class ChatRequest:
    text: str


@dataclass(frozen=True)
class ImageRequest:
    prompt: str


@dataclass(frozen=True)
class ClearRequest:
    pass


@dataclass(frozen=True)
class HelpRequest:
    command: str = ""


Outcome = Union[ChatRequest, ImageRequest, ClearRequest, HelpRequest]


def is_command(text: str) -> bool:
    return text.strip().startswith(COMMAND_PREFIX)


def route(text: str) -> Outcome:
    """Classify trimmed user text. Performs no I/O.

    Unknown commands fall back to help instead of an error.
    """
    text = text.strip()
    if not is_command(text):
        return ChatRequest(text)

    parts = text.split(None, 1)
    command = parts[0].lower()
    if command == _IMAGE_COMMAND:
        return ImageRequest(parts[1].strip() if len(parts) > 1 else "")
    if command in _CLEAR_ALIASES:
        return ClearRequest()
    return HelpRequest(command)


class CommandRouter:
    """Thin object wrapper over :func:`route` for injection into the dispatcher."""

    def route(self, text: str) -> Outcome:
        return route(text)


def get_help_text(bot_name: str = "") -> str:
    title = f"{bot_name} commands" if bot_name else "Commands"
    return "\n".join(
        [
            title,
            "",
            "Usage:",
            "- /clear: clear the conversation memory for this chat",
            "- /help: show this list",
            "- /image <prompt>: generate an image from a prompt",
            "",
            "Anything else is sent to the assistant as a chat message.",
        ]
    )
