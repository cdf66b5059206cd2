"""Event types flowing through the gateway."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ChatKind(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


class MessageKind(str, Enum):
    TEXT = "text"
    AUDIO = "audio"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class InboundEvent:
    """One delivery from the chat platform. Immutable once received."""
    event_id: str
    session_id: str
    chat_id: str
    sender_id: str
    created_at: datetime
    sender_is_bot: bool = False
    chat_kind: ChatKind = ChatKind.DIRECT
    mentions: frozenset[str] = field(default_factory=frozenset)
    message_kind: MessageKind = MessageKind.TEXT
    message_id: str = ""
    raw_content: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return str(self.raw_content.get("text", ""))

    @property
    def file_key(self) -> str:
        return str(self.raw_content.get("file_key", ""))


@dataclass
class OutboundMessage:
    """Reply to send back to a chat."""
    chat_id: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Decision:
    """Admission decision. ``reason`` is empty when the event may proceed."""
    process: bool
    reason: str = ""

    @classmethod
    def admit(cls) -> "Decision":
        return cls(process=True)

    @classmethod
    def ignore(cls, reason: str) -> "Decision":
        return cls(process=False, reason=reason)


@dataclass(frozen=True)
class HandlingResult:
    admitted: bool
    outcome_kind: str
    detail: str = ""
