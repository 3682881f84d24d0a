from __future__ import annotations

import json
import threading
from collections.abc import Iterator, Sequence
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from types import SimpleNamespace
from typing import Any

import pytest
from republic import RepublicError
from republic.core.errors import ErrorKind as RepublicErrorKind

from convoy.backends import http as http_module
from convoy.backends.http import (
    DEVELOPER_SYSTEM_PROMPT,
    ChatBackend,
    Completion,
    RepublicCompletionClient,
    Usage,
    classify_http_error,
    http_status_of,
    republic_status_of,
)
from convoy.config import HttpProviderSettings
from convoy.errors import BackendError, ContentRejectedError, ErrorKind, RateLimitedError
from convoy.events import ContentDelta, StreamEvent, UsageReported


class FakeClient:
    def __init__(self, *replies: Completion | Exception) -> None:
        self.replies = list(replies)
        self.calls: list[tuple[str, list[dict[str, str]], str | None]] = []

    async def complete(
        self,
        system_prompt: str,
        messages: Sequence[dict[str, str]],
        model: str | None = None,
    ) -> Completion:
        self.calls.append((system_prompt, list(messages), model))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class ChatCompletionsStub:
    """OpenAI-compatible /chat/completions endpoint serving canned replies."""

    def __init__(self) -> None:
        self.replies: list[tuple[int, dict[str, Any]]] = []
        self.requests: list[tuple[str, dict[str, Any]]] = []
        stub = self

        class Handler(BaseHTTPRequestHandler):
            def do_POST(self) -> None:
                length = int(self.headers.get("Content-Length") or 0)
                stub.requests.append((self.path, json.loads(self.rfile.read(length) or b"{}")))
                status, body = stub.replies.pop(0) if stub.replies else (500, {"error": {"message": "no reply"}})
                payload = json.dumps(body).encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(payload)))
                self.send_header("x-should-retry", "false")
                self.end_headers()
                self.wfile.write(payload)

            def log_message(self, format: str, *args: object) -> None:
                pass

        self.server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)

    @property
    def api_base(self) -> str:
        return f"http://127.0.0.1:{self.server.server_address[1]}/v1"

    def reply(self, status: int, body: dict[str, Any]) -> None:
        self.replies.append((status, body))


@pytest.fixture
def chat_stub() -> Iterator[ChatCompletionsStub]:
    stub = ChatCompletionsStub()
    thread = threading.Thread(target=stub.server.serve_forever, daemon=True)
    thread.start()
    try:
        yield stub
    finally:
        stub.server.shutdown()
        stub.server.server_close()
        thread.join(timeout=5)


def _stub_provider(stub: ChatCompletionsStub, **overrides: Any) -> HttpProviderSettings:
    fields: dict[str, Any] = {
        "id": "zai",
        "label": "Z",
        "model": "openai:glm-4.7",
        "api_key": "test-key",
        "api_base": stub.api_base,
        "max_retries": 0,
    }
    fields.update(overrides)
    return HttpProviderSettings(**fields)


def _completion_body(text: str) -> dict[str, Any]:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "glm-4.7",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": text}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4},
    }


def test_classify_http_error_by_status() -> None:
    assert isinstance(classify_http_error(429, "", backend_id="zai"), RateLimitedError)
    assert classify_http_error(429, "").category == "rate_limited"
    rejected = classify_http_error(400, "bad words")
    assert isinstance(rejected, ContentRejectedError)
    assert rejected.category == "content_rejected"
    generic = classify_http_error(503, "")
    assert type(generic) is BackendError
    assert generic.message == "API error: 503"
    assert all(err.kind is ErrorKind.BACKEND_ERROR for err in (rejected, generic))
    assert all(err.retryable for err in (rejected, generic))


def test_http_status_found_on_cause_chain() -> None:
    inner = Exception("inner")
    inner.response = SimpleNamespace(status_code=429)  # type: ignore[attr-defined]
    try:
        try:
            raise inner
        except Exception as exc:
            raise RuntimeError("wrapped") from exc
    except RuntimeError as outer:
        assert http_status_of(outer) == 429

    assert http_status_of(ValueError("no status")) is None


@pytest.mark.parametrize(
    ("kind", "message", "status"),
    [
        (RepublicErrorKind.TEMPORARY, "openai:glm-4.7: Error code: 429 - {'error': {}}", 429),
        (RepublicErrorKind.INVALID_INPUT, "openai:glm-4.7: Error code: 400 - {'error': {}}", 400),
        (RepublicErrorKind.PROVIDER, "mistral:large: status_code: 503, body: down", 503),
        (RepublicErrorKind.TEMPORARY, "openai:glm-4.7: [openai] Rate limit exceeded", 429),
        (RepublicErrorKind.TEMPORARY, "openai:glm-4.7: [openai] Content blocked by safety filter", 400),
        (RepublicErrorKind.PROVIDER, "openai:glm-4.7: Connection error.", None),
    ],
)
def test_republic_status_from_wrapped_message(kind: RepublicErrorKind, message: str, status: int | None) -> None:
    assert republic_status_of(RepublicError(kind, message)) == status


@pytest.mark.asyncio
async def test_republic_client_talks_to_chat_completions(chat_stub: ChatCompletionsStub) -> None:
    chat_stub.reply(200, _completion_body("pong"))
    client = RepublicCompletionClient(_stub_provider(chat_stub, max_tokens=77))

    completion = await client.complete("be brief", [{"role": "user", "content": "ping"}])

    assert completion.text == "pong"
    path, body = chat_stub.requests[0]
    assert path == "/v1/chat/completions"
    assert body["model"] == "glm-4.7"
    assert body["messages"][0] == {"role": "system", "content": "be brief"}
    assert body["messages"][-1] == {"role": "user", "content": "ping"}


@pytest.mark.asyncio
async def test_republic_rate_limit_becomes_rate_limited(chat_stub: ChatCompletionsStub) -> None:
    chat_stub.reply(
        429,
        {"error": {"message": "Rate limit reached for requests", "type": "rate_limit_error", "code": "rate_limit"}},
    )
    client = RepublicCompletionClient(_stub_provider(chat_stub))

    with pytest.raises(RateLimitedError) as exc_info:
        await client.complete("sys", [{"role": "user", "content": "hi"}])

    assert exc_info.value.backend_id == "zai"
    assert exc_info.value.retryable
    assert len(chat_stub.requests) == 1


@pytest.mark.asyncio
async def test_republic_bad_request_becomes_content_rejected(chat_stub: ChatCompletionsStub) -> None:
    chat_stub.reply(
        400,
        {"error": {"message": "Input contains sensitive content", "type": "invalid_request_error", "code": "1301"}},
    )
    client = RepublicCompletionClient(_stub_provider(chat_stub, id="minimax"))

    with pytest.raises(ContentRejectedError) as exc_info:
        await client.complete("sys", [{"role": "user", "content": "hi"}])

    assert exc_info.value.backend_id == "minimax"
    assert exc_info.value.category == "content_rejected"


@pytest.mark.asyncio
async def test_stream_emits_reply_and_usage() -> None:
    client = FakeClient(Completion("hello there", Usage(12, 3)), Completion("again"))
    backend = ChatBackend("zai", client)
    events: list[StreamEvent] = []

    async def emit(event: StreamEvent) -> None:
        events.append(event)

    outcome = await backend.stream("c1", "hi", model="glm-4.7", emit=emit)

    assert events == [ContentDelta("hello there"), UsageReported(12, 3)]
    assert outcome.text == "hello there"
    assert outcome.backend_id == "zai"
    assert outcome.session_ref == "zai:c1"
    assert (outcome.input_tokens, outcome.output_tokens) == (12, 3)
    assert client.calls[0][2] == "glm-4.7"

    await backend.stream("c1", "more")
    assert client.calls[1][1] == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello there"},
        {"role": "user", "content": "more"},
    ]


@pytest.mark.asyncio
async def test_failed_exchange_drops_user_message() -> None:
    client = FakeClient(RateLimitedError("429"), Completion("ok"))
    backend = ChatBackend("zai", client)

    with pytest.raises(RateLimitedError) as exc_info:
        await backend.stream("c1", "first")
    assert exc_info.value.backend_id == "zai"

    await backend.stream("c1", "second")
    assert client.calls[1][1] == [{"role": "user", "content": "second"}]


@pytest.mark.asyncio
async def test_history_is_bounded() -> None:
    client = FakeClient(*[Completion(f"r{i}") for i in range(6)])
    backend = ChatBackend("zai", client, max_history=4)

    for i in range(6):
        await backend.stream("c1", f"m{i}")

    sent = client.calls[-1][1]
    assert len(sent) == 5
    assert sent[0] == {"role": "user", "content": "m3"}
    assert sent[-1] == {"role": "user", "content": "m5"}


@pytest.mark.asyncio
async def test_developer_turns_use_separate_history_and_prompt() -> None:
    client = FakeClient(Completion("chat"), Completion("dev"), Completion("fresh"), Completion("fresh dev"))
    backend = ChatBackend("zai", client)

    await backend.stream("c1", "hello")
    reply = await backend.develop("c1", "review")

    assert reply == "dev"
    assert client.calls[1][0] == DEVELOPER_SYSTEM_PROMPT
    assert client.calls[1][1] == [{"role": "user", "content": "review"}]

    backend.reset("c1")
    await backend.stream("c1", "again")
    await backend.develop("c1", "again")
    assert client.calls[2][1] == [{"role": "user", "content": "again"}]
    assert client.calls[3][1] == [{"role": "user", "content": "again"}]


@pytest.mark.asyncio
async def test_cleanup_forgets_idle_histories_only() -> None:
    clock = FakeClock()
    client = FakeClient(*[Completion(f"r{i}") for i in range(4)])
    backend = ChatBackend("zai", client, clock=clock)

    await backend.stream("old", "hi")
    await backend.develop("old", "hi")
    clock.now += 500
    await backend.stream("recent", "hi")
    clock.now += 200

    assert backend.cleanup(600) == 2
    assert backend.cleanup(600) == 0

    await backend.stream("old", "back")
    assert client.calls[-1][1] == [{"role": "user", "content": "back"}]


class FakeLLM:
    instances: list[FakeLLM] = []

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        api_base: str | None = None,
        max_retries: int = 3,
    ) -> None:
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.max_retries = max_retries
        self.calls: list[dict[str, object]] = []
        FakeLLM.instances.append(self)

    async def chat_async(self, **kwargs: object) -> str:
        self.calls.append(kwargs)
        return "from llm"


@pytest.mark.asyncio
async def test_republic_client_resolves_models_and_caches_clients(monkeypatch: pytest.MonkeyPatch) -> None:
    FakeLLM.instances = []
    monkeypatch.setattr(http_module, "LLM", FakeLLM)
    provider = HttpProviderSettings(
        id="zai",
        label="Z",
        model="openai:glm-4.7",
        api_key="k",
        max_tokens=99,
        max_retries=1,
    )
    client = RepublicCompletionClient(provider)

    first = await client.complete("sys", [{"role": "user", "content": "hi"}])
    await client.complete("sys", [{"role": "user", "content": "again"}])
    await client.complete("sys", [{"role": "user", "content": "hi"}], model="glm-4.5")

    assert first.text == "from llm"
    assert [llm.model for llm in FakeLLM.instances] == ["openai:glm-4.7", "openai:glm-4.5"]
    assert FakeLLM.instances[0].max_retries == 1
    call = FakeLLM.instances[0].calls[0]
    assert call["max_tokens"] == 99
    assert call["messages"][0] == {"role": "system", "content": "sys"}
