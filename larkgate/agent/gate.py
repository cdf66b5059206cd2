"""Admission control for inbound events."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Iterable

from loguru import logger

from larkgate.bus.events import ChatKind, Decision, InboundEvent
from larkgate.storage.backends import KeyValueBackend, MemoryBackend

DUPLICATE = "duplicate"
SELF = "self"
STALE = "stale"
UNADDRESSED = "unaddressed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventGate:
    """Decides whether an inbound event is processed at all.

    Rules run in order and the first match wins: duplicate, self-originated,
    stale, unaddressed group message. The event id is registered before any
    other rule so a retried delivery of a rejected event stays rejected.
    """

    def __init__(
        self,
        bot_identities: Iterable[str],
        staleness_seconds: float = 10.0,
        processed: KeyValueBackend | None = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.bot_identities = frozenset(i for i in bot_identities if i)
        self.staleness_seconds = staleness_seconds
        self.processed = processed if processed is not None else MemoryBackend()
        self._now = now

    def admit(self, event: InboundEvent) -> Decision:
        if not self.processed.add_if_absent(event.event_id, True):
            return self._ignore(event, DUPLICATE)

        if event.sender_is_bot:
            return self._ignore(event, SELF)

        age = (self._now() - event.created_at).total_seconds()
        if age > self.staleness_seconds:
            return self._ignore(event, STALE, f" (age {age:.1f}s)")

        if event.chat_kind == ChatKind.GROUP and not (event.mentions & self.bot_identities):
            return self._ignore(event, UNADDRESSED)

        return Decision.admit()

    @staticmethod
    def _ignore(event: InboundEvent, reason: str, extra: str = "") -> Decision:
        logger.debug(f"Gate: ignoring event {event.event_id} [{event.session_id}]: {reason}{extra}")
        return Decision.ignore(reason)
