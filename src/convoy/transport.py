"""Chat transport boundary."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class Button:
    """Inline button; `payload` comes back through the transport's callback event."""

    text: str
    payload: str


class ChatTransport(Protocol):
    """Minimal message primitives the core needs from a chat platform."""

    async def send_message(
        self,
        conversation_id: str,
        text: str,
        *,
        buttons: Sequence[Button] | None = None,
    ) -> int: ...

    async def edit_message(self, conversation_id: str, message_id: int, text: str) -> bool: ...

    async def delete_message(self, conversation_id: str, message_id: int) -> bool: ...

    async def answer_callback(self, callback_id: str, text: str) -> None: ...
