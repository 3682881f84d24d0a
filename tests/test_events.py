from __future__ import annotations

import asyncio

import pytest

from convoy.errors import BackendError, ErrorKind, FallbackExhaustedError, RateLimitedError
from convoy.events import ContentDelta, EventChannel, StreamEvent


@pytest.mark.asyncio
async def test_subscribers_run_in_subscription_order() -> None:
    channel = EventChannel("c1")
    calls: list[str] = []

    async def slow(event: StreamEvent) -> None:
        await asyncio.sleep(0.01)
        calls.append("slow")

    async def fast(event: StreamEvent) -> None:
        calls.append("fast")

    channel.subscribe(slow)
    channel.subscribe(fast)
    await channel.emit(ContentDelta("x"))

    assert calls == ["slow", "fast"]


@pytest.mark.asyncio
async def test_subscriber_error_reaches_producer_and_skips_the_rest() -> None:
    channel = EventChannel("c1")
    calls: list[str] = []

    async def failing(event: StreamEvent) -> None:
        raise BackendError("stop", kind=ErrorKind.CONFIRMATION_REJECTED)

    async def later(event: StreamEvent) -> None:
        calls.append("later")

    channel.subscribe(failing)
    channel.subscribe(later)

    with pytest.raises(BackendError):
        await channel.emit(ContentDelta("x"))
    assert calls == []


@pytest.mark.asyncio
async def test_unsubscribe_and_close() -> None:
    channel = EventChannel("c1")
    seen: list[StreamEvent] = []

    async def record(event: StreamEvent) -> None:
        seen.append(event)

    unsubscribe = channel.subscribe(record)
    await channel.emit(ContentDelta("a"))
    unsubscribe()
    unsubscribe()
    await channel.emit(ContentDelta("b"))
    channel.subscribe(record)
    channel.close()
    await channel.emit(ContentDelta("c"))

    assert seen == [ContentDelta("a")]
    assert channel.closed


def test_retryable_kinds() -> None:
    assert BackendError("x").retryable
    assert RateLimitedError("x").retryable
    assert not BackendError("x", kind=ErrorKind.BUSY).retryable
    assert not BackendError("x", kind=ErrorKind.CONFIRMATION_TIMED_OUT).retryable
    exhausted = FallbackExhaustedError(BackendError("last", backend_id="mistral"), ["zai", "mistral"])
    assert not exhausted.retryable
    assert exhausted.message == "All providers failed (tried: zai, mistral). Last error: last"
    assert exhausted.backend_id == "mistral"
