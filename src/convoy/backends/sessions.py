"""Resumable CLI sessions per conversation."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from loguru import logger


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class CliSession:
    """One agent CLI conversation thread bound to a chat."""

    id: str
    conversation_id: str
    name: str
    working_dir: Path
    created_at: datetime = field(default_factory=_now)
    last_activity_at: datetime = field(default_factory=_now)
    message_count: int = 0
    is_active: bool = True
    backend_session_id: str | None = None

    @property
    def resume_id(self) -> str | None:
        """Session id the CLI understands; only known after the first turn."""
        if self.message_count == 0:
            return None
        return self.backend_session_id


@dataclass(frozen=True)
class SessionStats:
    total_sessions: int
    active_sessions: int
    total_messages: int


class SessionRegistry:
    """In-memory registry of CLI sessions keyed by conversation."""

    def __init__(self, working_dir: Path) -> None:
        self._working_dir = working_dir
        self._sessions: dict[str, CliSession] = {}
        self._active: dict[str, str] = {}

    def active(self, conversation_id: str) -> CliSession | None:
        session_id = self._active.get(conversation_id)
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def get_or_create(self, conversation_id: str) -> tuple[CliSession, bool]:
        session = self.active(conversation_id)
        if session is not None:
            return session, False
        return self.start_new(conversation_id), True

    def start_new(self, conversation_id: str, name: str | None = None) -> CliSession:
        previous = self.active(conversation_id)
        if previous is not None:
            previous.is_active = False
        session = CliSession(
            id=f"cv-{uuid.uuid4().hex[:10]}",
            conversation_id=conversation_id,
            name=name or f"Session {_now():%Y-%m-%d}",
            working_dir=self._working_dir,
        )
        self._sessions[session.id] = session
        self._active[conversation_id] = session.id
        return session

    def switch(self, conversation_id: str, session_id: str) -> CliSession | None:
        session = self._sessions.get(session_id)
        if session is None or session.conversation_id != conversation_id:
            return None
        previous = self.active(conversation_id)
        if previous is not None:
            previous.is_active = False
        session.is_active = True
        session.last_activity_at = _now()
        self._active[conversation_id] = session.id
        return session

    def record_turn(self, session: CliSession, backend_session_id: str | None) -> None:
        session.message_count += 1
        session.last_activity_at = _now()
        if backend_session_id:
            session.backend_session_id = backend_session_id

    def end(self, conversation_id: str) -> bool:
        session = self.active(conversation_id)
        if session is None:
            return False
        session.is_active = False
        del self._active[conversation_id]
        return True

    def delete(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        if self._active.get(session.conversation_id) == session_id:
            del self._active[session.conversation_id]
        return True

    def sessions_for(self, conversation_id: str) -> list[CliSession]:
        sessions = [s for s in self._sessions.values() if s.conversation_id == conversation_id]
        return sorted(sessions, key=lambda s: s.last_activity_at, reverse=True)

    def stats(self) -> SessionStats:
        sessions = list(self._sessions.values())
        return SessionStats(
            total_sessions=len(sessions),
            active_sessions=sum(1 for s in sessions if s.is_active),
            total_messages=sum(s.message_count for s in sessions),
        )

    def cleanup(self, max_idle_seconds: float) -> int:
        """Drop sessions idle longer than `max_idle_seconds`; an idle active session stops being resumed."""
        cutoff = _now() - timedelta(seconds=max_idle_seconds)
        stale = [session_id for session_id, session in self._sessions.items() if session.last_activity_at < cutoff]
        for session_id in stale:
            self.delete(session_id)
        if stale:
            logger.info("cli.sessions.cleanup removed={}", len(stale))
        return len(stale)
