"""Local console transport used by the `run` command."""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeAlias

from loguru import logger
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt

from convoy.transport import Button

ButtonHandler: TypeAlias = Callable[[str, str | None], Awaitable[bool]]


class ConsoleTransport:
    """Keeps messages in memory and asks button questions on the terminal."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()
        self.messages: dict[int, str] = {}
        self._ids = itertools.count(1)
        self._on_button: ButtonHandler | None = None
        self._prompts: set[asyncio.Task[None]] = set()

    def bind(self, on_button: ButtonHandler) -> None:
        self._on_button = on_button

    async def send_message(
        self,
        conversation_id: str,
        text: str,
        *,
        buttons: Sequence[Button] | None = None,
    ) -> int:
        message_id = next(self._ids)
        self.messages[message_id] = text
        if buttons:
            self.console.print(Panel(Markdown(text), title="confirmation", border_style="yellow"))
            task = asyncio.create_task(self._ask(list(buttons)))
            self._prompts.add(task)
            task.add_done_callback(self._prompts.discard)
        return message_id

    async def edit_message(self, conversation_id: str, message_id: int, text: str) -> bool:
        if message_id not in self.messages:
            return False
        self.messages[message_id] = text
        return True

    async def delete_message(self, conversation_id: str, message_id: int) -> bool:
        return self.messages.pop(message_id, None) is not None

    async def answer_callback(self, callback_id: str, text: str) -> None:
        self.console.print(text)

    def show(self, message_ids: Sequence[int]) -> None:
        for message_id in message_ids:
            text = self.messages.get(message_id)
            if text is not None:
                self.console.print(Markdown(text))

    async def _ask(self, buttons: list[Button]) -> None:
        choices = {str(index): button for index, button in enumerate(buttons, start=1)}
        question = "  ".join(f"[{key}] {button.text}" for key, button in choices.items())
        answer = await asyncio.to_thread(
            Prompt.ask,
            question,
            console=self.console,
            choices=list(choices),
            default=list(choices)[-1],
        )
        if self._on_button is None:
            logger.warning("console.transport.unbound payload={}", choices[answer].payload)
            return
        await self._on_button(choices[answer].payload, f"console-{answer}")

    async def close(self) -> None:
        for task in list(self._prompts):
            task.cancel()
