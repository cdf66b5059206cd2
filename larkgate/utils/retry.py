"""Retry, backoff and deadline handling applied at collaborator boundaries."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from larkgate.errors import BackendError, GatewayError

T = TypeVar("T")

_NON_RETRYABLE_MARKERS = (
    "invalid api key",
    "authentication",
    "unauthorized",
    "forbidden",
    "invalid request",
    "bad request",
    "context length",
    "unsupported model",
    "not found",
)
_RETRYABLE_MARKERS = (
    "timeout",
    "timed out",
    "rate limit",
    "too many requests",
    "temporar",
    "overloaded",
    "connection reset",
    "network error",
    "service unavailable",
    "internal server error",
)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 1
    backoff_seconds: float = 0.5
    max_backoff_seconds: float = 4.0
    timeout_seconds: float | None = 30.0

    def delay_for(self, attempt: int) -> float:
        """Exponential backoff before retry number ``attempt`` (1-based)."""
        return min(self.max_backoff_seconds, self.backoff_seconds * (2 ** (attempt - 1)))


class Deadline:
    """Per-event time budget shared by every collaborator call of one event."""

    def __init__(self, budget_seconds: float | None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires_at = None if budget_seconds is None else clock() + budget_seconds

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def clip(self, timeout: float | None) -> float | None:
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)


def is_retryable_error(err: BaseException) -> bool:
    """Retry only transient errors (timeouts/rate limits/server failures)."""
    if isinstance(err, asyncio.TimeoutError):
        return True
    message = str(err).lower()

    if any(marker in message for marker in _NON_RETRYABLE_MARKERS):
        return False

    status = getattr(err, "status_code", None)
    if status is None:
        status = getattr(err, "status", None)
    try:
        status_int = int(status) if status is not None else None
    except (TypeError, ValueError):
        status_int = None

    if status_int in {408, 409, 425, 429}:
        return True
    if status_int is not None and 500 <= status_int < 600:
        return True
    if status_int is not None:
        return False

    return any(marker in message for marker in _RETRYABLE_MARKERS)


async def call_with_policy(
    name: str,
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    deadline: Deadline | None = None,
    error_cls: type[GatewayError] = BackendError,
) -> T:
    """Run ``func`` under ``policy``; failures surface as ``error_cls``.

    Errors already in the gateway taxonomy keep their type so callers can tell
    an ``AuthError`` from a ``MediaError`` raised inside the same step.
    """
    attempts = max(1, policy.attempts)
    last_error: BaseException | None = None

    for attempt in range(1, attempts + 1):
        timeout = deadline.clip(policy.timeout_seconds) if deadline else policy.timeout_seconds
        if timeout is not None and timeout <= 0:
            raise error_cls(f"{name}: event deadline exceeded")
        try:
            if timeout is None:
                return await func()
            return await asyncio.wait_for(func(), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = e
            has_more = attempt < attempts
            if not has_more or not is_retryable_error(e):
                break
            delay = policy.delay_for(attempt)
            if deadline:
                delay = deadline.clip(delay) or 0.0
            logger.warning(f"{name} failed (attempt {attempt}/{attempts}): {e}; retrying in {delay:.2f}s")
            await asyncio.sleep(delay)

    if isinstance(last_error, GatewayError):
        raise last_error
    if isinstance(last_error, asyncio.TimeoutError):
        raise error_cls(f"{name}: timed out") from last_error
    raise error_cls(
        f"{name}: {last_error}",
        status_code=getattr(last_error, "status_code", None),
    ) from last_error
