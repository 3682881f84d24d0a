"""HTTP completion backends."""

from __future__ import annotations

import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from loguru import logger
from republic import LLM, RepublicError
from republic.core.errors import ErrorKind as RepublicErrorKind

from convoy.config import HttpProviderSettings
from convoy.errors import BackendError, ContentRejectedError, RateLimitedError
from convoy.events import ContentDelta, Emit, StreamOutcome, UsageReported, discard

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant in a chat app.\n"
    "- Be concise and direct\n"
    "- Use markdown for code blocks\n"
    "- Respond in the user's language when possible\n"
    "- Keep responses under 4000 characters"
)
DEVELOPER_SYSTEM_PROMPT = (
    "You are a senior software engineer helping over chat.\n"
    "- Mirror the user's language.\n"
    "- Keep answers compact and actionable. Prefer bullet lists.\n"
    "- When providing changes, output unified diffs, one fenced block per file.\n"
    "- Never invent files that don't exist; if context is missing, ask a short clarifying question first.\n"
    "- Maximum ~3500 characters per reply; if longer, summarize and offer to continue."
)
MAX_HISTORY_MESSAGES = 50

_STATUS_IN_MESSAGE = re.compile(r"\b(?:error code|status[_ ]code|status)[:= ]+(\d{3})\b", re.IGNORECASE)
_RATE_LIMIT_TEXT = re.compile(r"rate[_\s-]?limit|too many requests|quota exceeded", re.IGNORECASE)
_CONTENT_FILTER_TEXT = re.compile(r"content[_\s-]?filter|content policy|safety filter|moderation|sensitive", re.IGNORECASE)


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class Completion:
    text: str
    usage: Usage | None = None


class CompletionClient(Protocol):
    """Single-shot completion call offered by an HTTP backend."""

    async def complete(
        self,
        system_prompt: str,
        messages: Sequence[dict[str, str]],
        model: str | None = None,
    ) -> Completion: ...


def classify_http_error(
    status: int | None,
    message: str,
    *,
    backend_id: str | None = None,
) -> BackendError:
    """Map an HTTP failure onto rate-limited, content-rejected or generic errors."""
    if status == 429:
        return RateLimitedError(message or "Rate limit exceeded", backend_id=backend_id)
    if status == 400:
        return ContentRejectedError(message or "Content was filtered", backend_id=backend_id)
    detail = message or f"API error: {status}"
    return BackendError(detail, backend_id=backend_id)


def http_status_of(exc: BaseException) -> int | None:
    """Find an HTTP status code on an exception or its causes."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        for attr in ("status_code", "status"):
            value = getattr(current, attr, None)
            if isinstance(value, int):
                return value
        response = getattr(current, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
        current = current.__cause__ or current.__context__
    return None


def republic_status_of(exc: RepublicError) -> int | None:
    """Recover the HTTP status republic folds into its error message."""
    match = _STATUS_IN_MESSAGE.search(exc.message)
    if match:
        return int(match.group(1))
    # Unified provider exceptions drop the SDK text but keep republic's kind.
    if exc.kind is RepublicErrorKind.TEMPORARY and _RATE_LIMIT_TEXT.search(exc.message):
        return 429
    if _CONTENT_FILTER_TEXT.search(exc.message):
        return 400
    return None


class RepublicCompletionClient:
    """CompletionClient backed by the republic LLM client."""

    def __init__(self, provider: HttpProviderSettings) -> None:
        self._provider = provider
        self._clients: dict[str, LLM] = {}

    def _client(self, model: str) -> LLM:
        client = self._clients.get(model)
        if client is None:
            client = LLM(
                model,
                api_key=self._provider.api_key,
                api_base=self._provider.api_base,
                max_retries=self._provider.max_retries,
            )
            self._clients[model] = client
        return client

    def _resolve_model(self, model: str | None) -> str:
        if not model:
            return self._provider.model
        if ":" in model:
            return model
        vendor, _, _ = self._provider.model.partition(":")
        return f"{vendor}:{model}"

    async def complete(
        self,
        system_prompt: str,
        messages: Sequence[dict[str, str]],
        model: str | None = None,
    ) -> Completion:
        resolved = self._resolve_model(model)
        payload: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}, *messages]
        try:
            text = await self._client(resolved).chat_async(
                messages=payload,
                max_tokens=self._provider.max_tokens,
            )
        except BackendError:
            raise
        except RepublicError as exc:
            raise classify_http_error(republic_status_of(exc), exc.message, backend_id=self._provider.id) from exc
        except Exception as exc:
            raise classify_http_error(http_status_of(exc), str(exc), backend_id=self._provider.id) from exc
        return Completion(text=str(text or ""))


@dataclass
class _Conversation:
    messages: list[dict[str, str]] = field(default_factory=list)
    last_access_at: float = 0.0


class ChatBackend:
    """Router-facing adapter for one HTTP backend with per-conversation history."""

    def __init__(
        self,
        backend_id: str,
        client: CompletionClient,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        developer_prompt: str = DEVELOPER_SYSTEM_PROMPT,
        max_history: int = MAX_HISTORY_MESSAGES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend_id = backend_id
        self._client = client
        self._system_prompt = system_prompt
        self._developer_prompt = developer_prompt
        self._max_history = max_history
        self._clock = clock
        self._conversations: dict[str, _Conversation] = {}

    async def stream(
        self,
        conversation_id: str,
        message: str,
        *,
        model: str | None = None,
        emit: Emit = discard,
    ) -> StreamOutcome:
        started = time.monotonic()
        completion = await self._exchange(conversation_id, message, self._system_prompt, model)
        await emit(ContentDelta(completion.text))
        if completion.usage is not None:
            await emit(UsageReported(completion.usage.prompt_tokens, completion.usage.completion_tokens))
        return StreamOutcome(
            text=completion.text,
            backend_id=self.backend_id,
            conversation_id=conversation_id,
            session_ref=f"{self.backend_id}:{conversation_id}",
            duration_ms=int((time.monotonic() - started) * 1000),
            input_tokens=completion.usage.prompt_tokens if completion.usage else None,
            output_tokens=completion.usage.completion_tokens if completion.usage else None,
        )

    async def develop(self, conversation_id: str, message: str, *, model: str | None = None) -> str:
        # Developer turns keep their own history so they never mix with chat mode.
        completion = await self._exchange(f"dev:{conversation_id}", message, self._developer_prompt, model)
        return completion.text

    def reset(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)
        self._conversations.pop(f"dev:{conversation_id}", None)

    def cleanup(self, max_idle_seconds: float) -> int:
        """Forget histories nobody has used for `max_idle_seconds`."""
        now = self._clock()
        stale = [key for key, item in self._conversations.items() if now - item.last_access_at > max_idle_seconds]
        for key in stale:
            del self._conversations[key]
        if stale:
            logger.info("http.backend.cleanup backend={} removed={}", self.backend_id, len(stale))
        return len(stale)

    async def _exchange(
        self,
        key: str,
        message: str,
        system_prompt: str,
        model: str | None,
    ) -> Completion:
        conversation = self._conversations.setdefault(key, _Conversation())
        conversation.messages.append({"role": "user", "content": message})
        conversation.last_access_at = self._clock()
        try:
            completion = await self._client.complete(system_prompt, list(conversation.messages), model)
        except BackendError as exc:
            conversation.messages.pop()
            exc.backend_id = exc.backend_id or self.backend_id
            logger.warning("http.backend.error backend={} kind={} error={}", self.backend_id, exc.kind, exc.message)
            raise
        except Exception:
            conversation.messages.pop()
            raise
        conversation.messages.append({"role": "assistant", "content": completion.text})
        if len(conversation.messages) > self._max_history:
            del conversation.messages[: len(conversation.messages) - self._max_history]
        return completion
