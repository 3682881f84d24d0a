"""Stream event model shared by backends, the state machine and the outbound view."""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, TypeAlias

from convoy.errors import BackendError


def _now() -> datetime:
    return datetime.now(UTC)


def new_tool_id() -> str:
    return f"tool_{uuid.uuid4().hex[:12]}"


class Decision(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed-out"


@dataclass(frozen=True)
class ContentDelta:
    """Incremental assistant text."""

    text: str


@dataclass(frozen=True)
class ToolInvocation:
    """A backend-requested tool call."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class ToolOutcome:
    """Result of one tool invocation."""

    tool_invocation_id: str
    content: str
    is_error: bool = False
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class UsageReported:
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class BackendSwitched:
    """The router gave up on one backend and retries the turn with another."""

    backend_id: str
    reason: str


@dataclass(frozen=True)
class ConfirmationRequested:
    confirmation_id: str
    invocation: ToolInvocation


@dataclass(frozen=True)
class ConfirmationResolved:
    confirmation_id: str
    decision: Decision


@dataclass(frozen=True)
class StreamOutcome:
    """Final result of one routed turn."""

    text: str
    backend_id: str
    conversation_id: str
    session_ref: str | None = None
    is_new_session: bool = False
    duration_ms: int = 0
    exit_code: int = 0
    tool_history: tuple[ToolInvocation, ...] = ()
    input_tokens: int | None = None
    output_tokens: int | None = None
    was_fallback: bool = False


@dataclass(frozen=True)
class TurnCompleted:
    outcome: StreamOutcome


@dataclass(frozen=True)
class TurnFailed:
    error: BackendError


StreamEvent: TypeAlias = (
    ContentDelta
    | ToolInvocation
    | ToolOutcome
    | UsageReported
    | BackendSwitched
    | ConfirmationRequested
    | ConfirmationResolved
    | TurnCompleted
    | TurnFailed
)

EventHandler: TypeAlias = Callable[[StreamEvent], Awaitable[None]]
Emit: TypeAlias = Callable[[StreamEvent], Awaitable[None]]


class EventChannel:
    """Ordered event channel for one turn.

    Subscribers run one after another in subscription order. A subscriber that
    awaits (for example on a confirmation decision) holds the producer until it
    returns, and an exception raised by a subscriber propagates to the producer.
    """

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        self._handlers: list[EventHandler] = []
        self._closed = False

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    async def emit(self, event: StreamEvent) -> None:
        if self._closed:
            return
        for handler in list(self._handlers):
            await handler(event)


async def discard(_event: StreamEvent) -> None:
    """Emit target that drops every event."""


__all__ = [
    "BackendError",
    "BackendSwitched",
    "ConfirmationRequested",
    "ConfirmationResolved",
    "ContentDelta",
    "Decision",
    "Emit",
    "EventChannel",
    "EventHandler",
    "StreamEvent",
    "StreamOutcome",
    "ToolInvocation",
    "ToolOutcome",
    "TurnCompleted",
    "TurnFailed",
    "UsageReported",
    "discard",
    "new_tool_id",
]
