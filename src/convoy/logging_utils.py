"""Loguru setup shared by the CLI and the Telegram channel."""

from __future__ import annotations

import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Literal

import loguru
from loguru import logger
from rich import get_console
from rich.logging import RichHandler

LogProfile = Literal["default", "chat"]

DEFAULT_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<7} | {extra[conversation]:<12} | {name}:{line} | {message}"
)
CHAT_FORMAT = "[{extra[conversation]}] {message}"

_conversation: ContextVar[str] = ContextVar("convoy_conversation", default="-")
_active_profile: LogProfile | None = None


@contextmanager
def bind_conversation(conversation_id: str) -> Iterator[None]:
    """Tag log records emitted inside the block with a conversation id."""
    token = _conversation.set(conversation_id)
    try:
        yield
    finally:
        _conversation.reset(token)


def _tag_conversation(record: loguru.Record) -> None:
    record["extra"].setdefault("conversation", _conversation.get())


def _sink_options(profile: LogProfile) -> dict[str, Any]:
    if profile == "chat":
        # Rich renders level and time itself.
        sink = RichHandler(console=get_console(), show_time=False, show_path=False, markup=False)
        return {"sink": sink, "format": CHAT_FORMAT}
    return {"sink": sys.stderr, "format": DEFAULT_FORMAT}


def configure_logging(*, profile: LogProfile = "default", level: str | None = None) -> None:
    """Install the sink for `profile`; repeated calls with the same profile are no-ops."""
    global _active_profile
    if _active_profile == profile:
        return

    logger.remove()
    logger.configure(patcher=_tag_conversation)
    logger.add(
        level=(level or os.getenv("CONVOY_LOG_LEVEL", "INFO")).upper(),
        backtrace=False,
        diagnose=False,
        **_sink_options(profile),
    )
    _active_profile = profile
