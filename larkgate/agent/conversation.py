"""Rolling per-session conversation window with a size budget."""

from __future__ import annotations

import asyncio
import math
import time
import weakref
from dataclasses import dataclass, field
from typing import Callable, Literal

from loguru import logger

from larkgate.storage.backends import KeyValueBackend, MemoryBackend

Role = Literal["user", "assistant"]
SizeEstimator = Callable[[str], int]


@dataclass(frozen=True)
class Turn:
    role: Role
    text: str

    def as_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.text}


@dataclass
class Session:
    id: str
    history: list[Turn] = field(default_factory=list)
    last_touched: float = field(default_factory=time.time)


# ==================== Size estimators ====================


def char_count(text: str) -> int:
    return len(text)


def approx_tokens(text: str) -> int:
    """Roughly four characters per token; overestimates for CJK-heavy text."""
    return math.ceil(len(text) / 4)


def litellm_estimator(model: str) -> SizeEstimator:
    """Count tokens with LiteLLM's tokenizer for ``model``."""
    from litellm import token_counter

    def estimate(text: str) -> int:
        return token_counter(model=model, text=text)

    return estimate


def build_estimator(name: str, model: str = "") -> SizeEstimator:
    if name == "chars":
        return char_count
    if name == "approx_tokens":
        return approx_tokens
    if name == "litellm":
        return litellm_estimator(model)
    raise ValueError(f"Unknown size estimator '{name}'")


# ==================== Store ====================


class ConversationStore:
    """Session -> ordered Turn history, trimmed from the head to stay within ``max_size``.

    Mutations of one session are serialized by a per-session lock; different
    sessions never wait on each other.
    """

    def __init__(
        self,
        max_size: int,
        estimator: SizeEstimator = char_count,
        backend: KeyValueBackend | None = None,
    ):
        self.max_size = max_size
        self.estimator = estimator
        self.backend = backend if backend is not None else MemoryBackend()
        # Held for the whole of each mutation, backend calls included.
        # Locks live only while some call holds or awaits them.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _get_or_create(self, session_id: str) -> Session:
        session = self.backend.get(session_id)
        if session is None:
            session = Session(id=session_id)
            logger.debug(f"Conversation: new session {session_id}")
        session.last_touched = time.time()
        return session

    def total_size(self, history: list[Turn]) -> int:
        return sum(self.estimator(turn.text) for turn in history)

    def history(self, session_id: str) -> list[Turn]:
        session = self.backend.get(session_id)
        return list(session.history) if session else []

    async def append_user(self, session_id: str, text: str) -> list[Turn]:
        """Append a user turn; returns a snapshot of the full history."""
        async with self._lock(session_id):
            session = self._get_or_create(session_id)
            session.history.append(Turn("user", text))
            self.backend.put(session_id, session)
            return list(session.history)

    async def append_assistant_and_trim(self, session_id: str, answer: str) -> list[Turn]:
        """Append the answer and trim. Returns [] if the session was evicted or cleared meanwhile."""
        async with self._lock(session_id):
            session = self.backend.get(session_id)
            if session is None:
                logger.warning(f"Conversation: session {session_id} gone before its answer arrived; answer not stored")
                return []
            session.last_touched = time.time()
            session.history.append(Turn("assistant", answer))

            sizes = [self.estimator(turn.text) for turn in session.history]
            total = sum(sizes)
            dropped = 0
            # A single oversized turn is kept whole.
            while total > self.max_size and len(session.history) > 1:
                session.history.pop(0)
                total -= sizes.pop(0)
                dropped += 1

            if dropped:
                logger.debug(
                    f"Conversation: trimmed {dropped} turn(s) from {session_id} (size {total}/{self.max_size})"
                )
            self.backend.put(session_id, session)
            return list(session.history)

    async def clear(self, session_id: str) -> int:
        """Drop the session; returns the number of turns removed."""
        async with self._lock(session_id):
            session = self.backend.get(session_id)
            self.backend.delete(session_id)
        return len(session.history) if session else 0
