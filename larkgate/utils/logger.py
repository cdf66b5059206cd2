"""Logging setup with per-event correlation."""

import contextvars
import sys
from pathlib import Path

from loguru import logger

_event_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("event_id", default="")

_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[event_id]}</magenta> | <cyan>{name}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[event_id]} | {name}:{function}:{line} - {message}"


def bind_event_id(event_id: str) -> contextvars.Token[str]:
    """Tag log lines from the current task with ``event_id``. Returns a reset token."""
    return _event_id_ctx.set(event_id)


def reset_event_id(token: contextvars.Token[str]) -> None:
    _event_id_ctx.reset(token)


def current_event_id() -> str:
    return _event_id_ctx.get() or "-"


def _event_id_filter(record: dict) -> bool:
    record["extra"].setdefault("event_id", current_event_id())
    return True


def setup_logging(level: str = "INFO", log_file: str | None = None) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level, format=_CONSOLE_FORMAT, filter=_event_id_filter)

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(path),
            level=level,
            format=_FILE_FORMAT,
            filter=_event_id_filter,
            rotation="10 MB",
            retention="7 days",
        )
