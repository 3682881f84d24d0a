"""Per-conversation stream state and status rendering."""

from __future__ import annotations

import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from blinker import Signal
from loguru import logger

from convoy.errors import BusyError
from convoy.events import (
    BackendSwitched,
    ConfirmationRequested,
    ConfirmationResolved,
    ContentDelta,
    Decision,
    StreamEvent,
    ToolInvocation,
    ToolOutcome,
    TurnCompleted,
    TurnFailed,
    UsageReported,
)

ERROR_PREVIEW_CHARS = 300
ELAPSED_THRESHOLD_SECONDS = 3


class Phase(StrEnum):
    IDLE = "idle"
    THINKING = "thinking"
    TOOL_USE = "tool_use"
    RESPONSE = "response"
    CONFIRMATION = "confirmation"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (Phase.COMPLETE, Phase.ERROR)


@dataclass(frozen=True)
class PhaseDisplay:
    emoji: str
    text: str
    show_elapsed: bool = False


PHASE_DISPLAYS: dict[Phase, PhaseDisplay] = {
    Phase.IDLE: PhaseDisplay("💤", "Ready"),
    Phase.THINKING: PhaseDisplay("🤔", "Analyzing...", show_elapsed=True),
    Phase.TOOL_USE: PhaseDisplay("🔧", "Working"),
    Phase.RESPONSE: PhaseDisplay("✍️", "Writing...", show_elapsed=True),
    Phase.CONFIRMATION: PhaseDisplay("⚠️", "Confirmation needed"),
    Phase.COMPLETE: PhaseDisplay("✅", "Done"),
    Phase.ERROR: PhaseDisplay("❌", "Error"),
}

ERROR_SUGGESTIONS: tuple[tuple[re.Pattern[str], tuple[str, ...]], ...] = (
    (
        re.compile(r"permission|denied|access", re.IGNORECASE),
        (
            "🔑 Check file permissions with `ls -la`",
            "👤 Try running with different user permissions",
            "📂 Verify the file/directory path is correct",
        ),
    ),
    (
        re.compile(r"not found|no such file|does not exist", re.IGNORECASE),
        (
            "🔍 Verify the file path is correct",
            "📂 List directory contents with `ls`",
            "📍 Check your current working directory",
        ),
    ),
    (
        re.compile(r"timeout|timed out", re.IGNORECASE),
        (
            "⏱️ The operation took too long",
            "🔄 Try again with a smaller task",
            "📊 Check system resources",
        ),
    ),
    (
        re.compile(r"network|connection|dns", re.IGNORECASE),
        (
            "🌐 Check your internet connection",
            "🔌 Verify VPN or proxy settings",
            "🔄 Try the operation again",
        ),
    ),
    (
        re.compile(r"syntax|parse|unexpected", re.IGNORECASE),
        (
            "📝 Review the code for syntax errors",
            "🔍 Check for missing brackets or quotes",
            "💡 Ask the assistant to explain the error",
        ),
    ),
    (
        re.compile(r"memory|out of memory|oom", re.IGNORECASE),
        (
            "💾 Close unnecessary applications",
            "🔄 Try with a smaller file or dataset",
            "🖥️ Consider increasing available memory",
        ),
    ),
)
GENERIC_SUGGESTIONS = (
    "💡 Ask the assistant to explain what went wrong",
    "🔄 Retry the operation",
    "📋 Review the steps that led to this error",
)


def error_suggestions(message: str) -> tuple[str, ...]:
    for pattern, suggestions in ERROR_SUGGESTIONS:
        if pattern.search(message):
            return suggestions
    return GENERIC_SUGGESTIONS


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class StreamSession:
    """Lifecycle state of one turn."""

    conversation_id: str
    backend_id: str
    started_at: datetime = field(default_factory=_utcnow)
    last_update_at: datetime = field(default_factory=_utcnow)
    phase: Phase = Phase.IDLE
    accumulated_text: str = ""
    tool_history: list[ToolInvocation] = field(default_factory=list)
    resolved_tool_ids: set[str] = field(default_factory=set)
    current_tool: str | None = None
    pending_confirmation_id: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    error_message: str | None = None
    started_monotonic: float = field(default_factory=time.monotonic)
    updated_monotonic: float = field(default_factory=time.monotonic)

    @property
    def total_tokens(self) -> int | None:
        if self.input_tokens is None or self.output_tokens is None:
            return None
        return self.input_tokens + self.output_tokens

    @property
    def tools_settled(self) -> bool:
        return all(tool.id in self.resolved_tool_ids for tool in self.tool_history)


class StreamStateMachine:
    """Tracks one StreamSession per conversation, driven purely by stream events."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._sessions: dict[str, StreamSession] = {}
        self._clock = clock
        self.phase_changed = Signal("convoy.phase_changed")

    def get(self, conversation_id: str) -> StreamSession | None:
        return self._sessions.get(conversation_id)

    def is_active(self, conversation_id: str) -> bool:
        session = self._sessions.get(conversation_id)
        return session is not None and not session.phase.terminal and session.phase is not Phase.IDLE

    def begin(self, conversation_id: str, backend_id: str) -> StreamSession:
        existing = self._sessions.get(conversation_id)
        if existing is not None and not existing.phase.terminal:
            raise BusyError(conversation_id)
        now = self._clock()
        session = StreamSession(
            conversation_id=conversation_id,
            backend_id=backend_id,
            started_monotonic=now,
            updated_monotonic=now,
        )
        self._sessions[conversation_id] = session
        self._transition(session, Phase.THINKING)
        return session

    def clear(self, conversation_id: str) -> None:
        self._sessions.pop(conversation_id, None)

    def apply(self, conversation_id: str, event: StreamEvent) -> bool:
        """Feed one event; returns False when the event was not accepted."""
        session = self._sessions.get(conversation_id)
        if session is None or session.phase.terminal:
            return False
        accepted = self._apply(session, event)
        if accepted:
            session.last_update_at = _utcnow()
            session.updated_monotonic = self._clock()
        return accepted

    def fail(self, conversation_id: str, message: str) -> bool:
        session = self._sessions.get(conversation_id)
        if session is None or session.phase.terminal:
            return False
        session.error_message = message
        self._transition(session, Phase.ERROR)
        return True

    def _apply(self, session: StreamSession, event: StreamEvent) -> bool:  # noqa: C901
        match event:
            case ToolInvocation():
                if session.phase is Phase.CONFIRMATION:
                    return False
                session.tool_history.append(event)
                session.current_tool = event.name
                self._transition(session, Phase.TOOL_USE)
                return True
            case ToolOutcome():
                if session.phase is Phase.CONFIRMATION:
                    logger.warning(
                        "stream.state.outcome_during_confirmation conversation_id={} tool_id={}",
                        session.conversation_id,
                        event.tool_invocation_id,
                    )
                    return False
                session.resolved_tool_ids.add(event.tool_invocation_id)
                session.current_tool = None
                return True
            case ContentDelta():
                if session.phase is Phase.CONFIRMATION:
                    return False
                session.accumulated_text += event.text
                if session.phase is Phase.THINKING or (session.phase is Phase.TOOL_USE and session.tools_settled):
                    self._transition(session, Phase.RESPONSE)
                return True
            case ConfirmationRequested():
                session.pending_confirmation_id = event.confirmation_id
                session.current_tool = event.invocation.name
                self._transition(session, Phase.CONFIRMATION)
                return True
            case ConfirmationResolved():
                if session.pending_confirmation_id != event.confirmation_id:
                    return False
                session.pending_confirmation_id = None
                if event.decision is Decision.APPROVED:
                    self._transition(session, Phase.TOOL_USE)
                    return True
                reason = "timed out" if event.decision is Decision.TIMED_OUT else "rejected by user"
                session.error_message = f"Operation {session.current_tool or ''} {reason}".replace("  ", " ")
                self._transition(session, Phase.ERROR)
                return True
            case UsageReported():
                session.input_tokens = event.input_tokens
                session.output_tokens = event.output_tokens
                return True
            case BackendSwitched():
                session.backend_id = event.backend_id
                session.accumulated_text = ""
                session.current_tool = None
                self._transition(session, Phase.THINKING)
                return True
            case TurnCompleted():
                outcome = event.outcome
                if outcome.input_tokens is not None and outcome.output_tokens is not None:
                    session.input_tokens = outcome.input_tokens
                    session.output_tokens = outcome.output_tokens
                session.backend_id = outcome.backend_id
                session.accumulated_text = outcome.text
                session.current_tool = None
                self._transition(session, Phase.COMPLETE)
                return True
            case TurnFailed():
                session.error_message = event.error.message
                self._transition(session, Phase.ERROR)
                return True
        return False

    def _transition(self, session: StreamSession, phase: Phase) -> None:
        if session.phase is phase:
            return
        previous = session.phase
        session.phase = phase
        logger.debug(
            "stream.state.transition conversation_id={} from={} to={}",
            session.conversation_id,
            previous,
            phase,
        )
        self.phase_changed.send(self, conversation_id=session.conversation_id, phase=phase)

    def render(self, conversation_id: str, *, now: float | None = None) -> str:
        """Status text for a conversation; `now` lets a live view keep the elapsed time ticking."""
        session = self._sessions.get(conversation_id)
        if session is None:
            return "⏳ Initializing..."

        display = PHASE_DISPLAYS[session.phase]
        text = f"{display.emoji} {display.text}"

        if display.show_elapsed:
            until = session.updated_monotonic if now is None else now
            elapsed = int(until - session.started_monotonic)
            if elapsed >= ELAPSED_THRESHOLD_SECONDS:
                text += f" ({elapsed}s)"

        if session.phase is Phase.COMPLETE and session.total_tokens:
            text += f"\n\n📊 {session.total_tokens / 1000:.1f}k tokens"
            if session.input_tokens and session.output_tokens:
                text += f" ({session.input_tokens / 1000:.1f}k in + {session.output_tokens / 1000:.1f}k out)"

        if session.current_tool and not session.phase.terminal:
            text += f"\n\n🔧 {session.current_tool}"

        if session.error_message:
            message = session.error_message
            if len(message) > ERROR_PREVIEW_CHARS:
                message = message[: ERROR_PREVIEW_CHARS - 3] + "..."
            text += f"\n\n❌ {message}"
            text += "\n\n💡 Possible solutions:"
            for suggestion in error_suggestions(session.error_message):
                text += f"\n{suggestion}"

        return text

    def now(self) -> float:
        return self._clock()

    def cleanup(self, max_idle_seconds: float = 3600.0) -> int:
        """Drop sessions that have been idle longer than the threshold."""
        now = self._clock()
        stale = [
            conversation_id
            for conversation_id, session in self._sessions.items()
            if now - session.updated_monotonic > max_idle_seconds
        ]
        for conversation_id in stale:
            del self._sessions[conversation_id]
        if stale:
            logger.info("stream.state.cleanup removed={}", len(stale))
        return len(stale)
