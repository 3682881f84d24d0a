"""Backend adapters and their router-facing contracts."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from convoy.events import Emit, StreamOutcome


class StreamingBackend(Protocol):
    """A backend able to serve one streamed turn."""

    async def stream(
        self,
        conversation_id: str,
        message: str,
        *,
        model: str | None = None,
        emit: Emit = ...,
    ) -> StreamOutcome: ...


@runtime_checkable
class DeveloperBackend(Protocol):
    """A backend that can answer with a distinct developer system prompt."""

    async def develop(self, conversation_id: str, message: str, *, model: str | None = None) -> str: ...


__all__ = ["DeveloperBackend", "StreamingBackend"]
