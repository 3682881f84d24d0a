from __future__ import annotations

import os
import stat
import sys
import textwrap
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from convoy.transport import Button


class RecordingTransport:
    """In-memory ChatTransport that records every call."""

    def __init__(self, *, fail_edits: bool = False, fail_sends: bool = False) -> None:
        self.fail_edits = fail_edits
        self.fail_sends = fail_sends
        self.sent: list[tuple[str, str, list[Button] | None]] = []
        self.edits: list[tuple[str, int, str]] = []
        self.deleted: list[tuple[str, int]] = []
        self.answers: list[tuple[str, str]] = []
        self.messages: dict[int, str] = {}
        self._next_id = 100

    async def send_message(
        self,
        conversation_id: str,
        text: str,
        *,
        buttons: Sequence[Button] | None = None,
    ) -> int:
        if self.fail_sends:
            raise RuntimeError("send failed")
        self._next_id += 1
        self.sent.append((conversation_id, text, list(buttons) if buttons else None))
        self.messages[self._next_id] = text
        return self._next_id

    async def edit_message(self, conversation_id: str, message_id: int, text: str) -> bool:
        self.edits.append((conversation_id, message_id, text))
        if self.fail_edits:
            raise RuntimeError("edit failed")
        self.messages[message_id] = text
        return True

    async def delete_message(self, conversation_id: str, message_id: int) -> bool:
        self.deleted.append((conversation_id, message_id))
        return self.messages.pop(message_id, None) is not None

    async def answer_callback(self, callback_id: str, text: str) -> None:
        self.answers.append((callback_id, text))

    def confirmation_payloads(self) -> list[str]:
        return [button.payload for _, _, buttons in self.sent if buttons for button in buttons]


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def make_cli(tmp_path: Path) -> Callable[[str], Path]:
    """Write an executable Python script that stands in for the agent CLI."""

    def _make(body: str, name: str = "fake-cli") -> Path:
        path = tmp_path / name
        path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body), encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("CONVOY_"):
            monkeypatch.delenv(key, raising=False)
