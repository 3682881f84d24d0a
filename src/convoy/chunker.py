"""Message chunking and throttled progressive edits."""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass

from loguru import logger

from convoy.transport import ChatTransport

DEFAULT_MAX_LENGTH = 4000
DEFAULT_INTERVAL_SECONDS = 0.5
CONTINUATION_MARKER = "\n\n_...continuing..._"


@dataclass(frozen=True)
class MessageChunk:
    content: str
    index: int
    is_final: bool


def _lines(text: str) -> list[str]:
    parts = text.split("\n")
    return [part + "\n" for part in parts[:-1]] + ([parts[-1]] if parts[-1] else [])


def split_into_chunks(text: str, max_length: int = DEFAULT_MAX_LENGTH) -> list[MessageChunk]:
    """Split on line boundaries; only lines longer than the limit are cut mid-line."""
    if max_length <= 0:
        raise ValueError("max_length must be positive")

    contents: list[str] = []
    current = ""
    for line in _lines(text):
        if len(current) + len(line) <= max_length:
            current += line
            continue
        if current:
            contents.append(current)
            current = ""
        while len(line) > max_length:
            contents.append(line[:max_length])
            line = line[max_length:]
        current = line
    if current or not contents:
        contents.append(current)

    last = len(contents) - 1
    return [MessageChunk(content=content, index=index, is_final=index == last) for index, content in enumerate(contents)]


def render_chunks(chunks: list[MessageChunk]) -> list[str]:
    return [chunk.content if chunk.is_final else chunk.content + CONTINUATION_MARKER for chunk in chunks]


def strip_continuation(text: str) -> str:
    return text.removesuffix(CONTINUATION_MARKER)


def truncate_live(text: str, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - len(CONTINUATION_MARKER)] + CONTINUATION_MARKER


@dataclass
class _View:
    conversation_id: str
    message_id: int | None = None
    buffer: str = ""
    sent_text: str | None = None
    last_flush: float = -math.inf
    task: asyncio.Task[None] | None = None
    delivering: bool = False
    closed: bool = False


class OutboundStreamer:
    """One progressively edited message per conversation.

    At most one edit is scheduled or in flight per conversation; whatever is in
    the buffer when that edit fires is what gets sent.
    """

    def __init__(
        self,
        transport: ChatTransport,
        *,
        max_length: int = DEFAULT_MAX_LENGTH,
        interval: float = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        if max_length <= len(CONTINUATION_MARKER):
            raise ValueError("max_length must leave room for the continuation marker")
        self._transport = transport
        self._max_length = max_length
        self._interval = interval
        self._views: dict[str, _View] = {}

    @property
    def max_length(self) -> int:
        return self._max_length

    def message_id(self, conversation_id: str) -> int | None:
        view = self._views.get(conversation_id)
        return view.message_id if view else None

    def attach(self, conversation_id: str, message_id: int, text: str | None = None) -> None:
        """Reuse an already sent message (e.g. a status placeholder) as the live view."""
        view = self._views.setdefault(conversation_id, _View(conversation_id))
        view.message_id = message_id
        view.sent_text = text

    def push(self, conversation_id: str, text: str) -> None:
        view = self._views.setdefault(conversation_id, _View(conversation_id))
        if view.closed:
            return
        view.buffer = text
        if view.task is None:
            view.task = asyncio.get_running_loop().create_task(self._run(view))

    async def _run(self, view: _View) -> None:
        loop = asyncio.get_running_loop()
        try:
            while not view.closed:
                delay = view.last_flush + self._interval - loop.time()
                if delay > 0:
                    await asyncio.sleep(delay)
                    if view.closed:
                        return
                text = truncate_live(view.buffer, self._max_length)
                if not text or text == view.sent_text:
                    return
                view.delivering = True
                try:
                    await self._deliver(view, text)
                finally:
                    view.delivering = False
                    view.last_flush = loop.time()
        finally:
            if view.task is asyncio.current_task():
                view.task = None

    async def _deliver(self, view: _View, text: str) -> None:
        # Marked as sent even on failure so a broken message is not retried in a hot loop.
        view.sent_text = text
        try:
            if view.message_id is None:
                view.message_id = await self._transport.send_message(view.conversation_id, text)
            elif not await self._transport.edit_message(view.conversation_id, view.message_id, text):
                logger.warning(
                    "outbound.edit.rejected conversation_id={} message_id={}",
                    view.conversation_id,
                    view.message_id,
                )
        except Exception:
            logger.exception("outbound.edit.error conversation_id={} message_id={}", view.conversation_id, view.message_id)

    async def _settle(self, view: _View) -> None:
        view.closed = True
        task = view.task
        if task is None or task.done():
            return
        if not view.delivering:
            task.cancel()
        await asyncio.wait([task])

    async def finish(self, conversation_id: str, final_text: str) -> list[int]:
        """Flush the final text now, splitting it across messages when needed."""
        view = self._views.setdefault(conversation_id, _View(conversation_id))
        await self._settle(view)
        self._views.pop(conversation_id, None)

        if len(final_text) <= self._max_length:
            payloads = [final_text]
        else:
            chunks = split_into_chunks(final_text, self._max_length - len(CONTINUATION_MARKER))
            payloads = render_chunks(chunks)

        message_ids: list[int] = []
        first, *rest = payloads
        if view.message_id is not None:
            message_ids.append(view.message_id)
            if first != view.sent_text:
                try:
                    ok = await self._transport.edit_message(conversation_id, view.message_id, first)
                except Exception:
                    logger.exception("outbound.finish.edit_error conversation_id={}", conversation_id)
                else:
                    if not ok:
                        logger.warning("outbound.finish.edit_rejected conversation_id={}", conversation_id)
        else:
            rest = payloads

        for payload in rest:
            try:
                message_ids.append(await self._transport.send_message(conversation_id, payload))
            except Exception:
                logger.exception("outbound.finish.send_error conversation_id={}", conversation_id)
        logger.debug("outbound.finish conversation_id={} messages={}", conversation_id, len(message_ids))
        return message_ids

    async def post(self, conversation_id: str, text: str) -> int | None:
        """Send a standalone message next to the live view."""
        try:
            return await self._transport.send_message(conversation_id, truncate_live(text, self._max_length))
        except Exception:
            logger.exception("outbound.post.error conversation_id={}", conversation_id)
            return None

    async def cancel(self, conversation_id: str) -> None:
        view = self._views.pop(conversation_id, None)
        if view is None:
            return
        await self._settle(view)

    async def close(self) -> None:
        for conversation_id in list(self._views):
            await self.cancel(conversation_id)
