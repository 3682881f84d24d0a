"""Turn orchestration: one in-flight turn per conversation."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from loguru import logger

from convoy.chunker import OutboundStreamer
from convoy.confirmation import ConfirmationGate
from convoy.errors import BackendError, BusyError, ConfirmationRejectedError, ErrorKind
from convoy.events import (
    Decision,
    EventChannel,
    StreamEvent,
    StreamOutcome,
    ToolInvocation,
    ToolOutcome,
    TurnCompleted,
    TurnFailed,
)
from convoy.logging_utils import bind_conversation
from convoy.router import ProviderRouter, ProviderStatus
from convoy.state import Phase, StreamStateMachine
from convoy.tool_view import format_tool_result, format_tool_use

NO_OUTPUT = "(no output)"
CANCELLED_MESSAGE = "Cancelled by user"


@dataclass(frozen=True)
class TurnResult:
    """What the caller gets back for one user message."""

    conversation_id: str
    ok: bool
    text: str = ""
    outcome: StreamOutcome | None = None
    error: BackendError | None = None
    message_ids: tuple[int, ...] = ()

    @property
    def kind(self) -> ErrorKind | None:
        return self.error.kind if self.error is not None else None

    @property
    def busy(self) -> bool:
        return self.kind is ErrorKind.BUSY


@dataclass
class _Turn:
    conversation_id: str
    channel: EventChannel | None = None
    task: asyncio.Task[TurnResult] | None = field(default=None, repr=False)
    ticker: asyncio.Task[None] | None = field(default=None, repr=False)


class TurnManager:
    """Runs turns through the router while keeping state, gate and view in step."""

    def __init__(
        self,
        *,
        router: ProviderRouter,
        state: StreamStateMachine,
        gate: ConfirmationGate,
        streamer: OutboundStreamer,
        session_idle_seconds: float = 3600.0,
        resetters: Iterable[Callable[[str], object]] = (),
        sweepers: Iterable[Callable[[float], int]] = (),
        show_tool_results: bool = True,
        status_interval: float = 3.0,
    ) -> None:
        self.router = router
        self.state = state
        self.gate = gate
        self.streamer = streamer
        self._session_idle_seconds = session_idle_seconds
        self._resetters = list(resetters)
        self._sweepers = list(sweepers)
        self._show_tool_results = show_tool_results
        self._status_interval = status_interval
        self._turns: dict[str, _Turn] = {}
        self._sweeper: asyncio.Task[None] | None = None
        state.phase_changed.connect(self._on_phase_changed)

    def is_busy(self, conversation_id: str) -> bool:
        return conversation_id in self._turns

    async def start_turn(self, conversation_id: str, text: str) -> TurnResult:
        if conversation_id in self._turns:
            return self._busy(conversation_id)
        try:
            self.state.begin(conversation_id, self.router.get_provider(conversation_id))
        except BusyError as exc:
            return TurnResult(conversation_id=conversation_id, ok=False, text=exc.message, error=exc)

        channel = EventChannel(conversation_id)
        turn = _Turn(conversation_id=conversation_id, channel=channel)
        self._turns[conversation_id] = turn
        channel.subscribe(self._state_subscriber(conversation_id))
        channel.subscribe(self._confirmation_guard(channel))
        channel.subscribe(self._view_subscriber(conversation_id))
        self._refresh(conversation_id)

        turn.ticker = asyncio.create_task(self._tick(turn), name=f"convoy.status.{conversation_id}")
        task = asyncio.create_task(self._run_turn(turn, channel, text), name=f"convoy.turn.{conversation_id}")
        turn.task = task
        return await self._await_turn(turn, task)

    async def start_developer_turn(self, conversation_id: str, text: str) -> TurnResult:
        if conversation_id in self._turns:
            return self._busy(conversation_id)
        turn = _Turn(conversation_id=conversation_id)
        self._turns[conversation_id] = turn
        task = asyncio.create_task(self._run_developer_turn(turn, text), name=f"convoy.dev.{conversation_id}")
        turn.task = task
        return await self._await_turn(turn, task)

    async def _await_turn(self, turn: _Turn, task: asyncio.Task[TurnResult]) -> TurnResult:
        try:
            await asyncio.wait([task])
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task.cancelled():
            # A task cancelled before its first step never reaches its own cleanup.
            self._release(turn)
            error =BackendError(CANCELLED_MESSAGE, kind=ErrorKind.CLI_ERROR)
            return TurnResult(conversation_id=turn.conversation_id, ok=False, text=CANCELLED_MESSAGE, error=error)
        return task.result()

    async def _run_turn(self, turn: _Turn, channel: EventChannel, text: str) -> TurnResult:
        conversation_id = turn.conversation_id
        with bind_conversation(conversation_id):
            try:
                logger.info("turn.start conversation_id={} chars={}", conversation_id, len(text))
                try:
                    outcome = await self.router.route(conversation_id, text, channel.emit)
                except BackendError as exc:
                    return await self._fail_turn(turn, channel, exc)
                except Exception as exc:
                    logger.exception("turn.crash conversation_id={}", conversation_id)
                    return await self._fail_turn(turn, channel, BackendError(str(exc) or type(exc).__name__))

                await channel.emit(TurnCompleted(outcome))
                channel.close()
                final_text = outcome.text or NO_OUTPUT
                message_ids = await self.streamer.finish(conversation_id, final_text)
                logger.info(
                    "turn.complete conversation_id={} provider={} fallback={} duration_ms={}",
                    conversation_id,
                    outcome.backend_id,
                    outcome.was_fallback,
                    outcome.duration_ms,
                )
                return TurnResult(
                    conversation_id=conversation_id,
                    ok=True,
                    text=final_text,
                    outcome=outcome,
                    message_ids=tuple(message_ids),
                )
            except asyncio.CancelledError:
                await self._abort_turn(turn)
                raise
            finally:
                self._release(turn)

    async def _fail_turn(self, turn: _Turn, channel: EventChannel, error: BackendError) -> TurnResult:
        conversation_id = turn.conversation_id
        logger.warning("turn.failed conversation_id={} kind={} error={}", conversation_id, error.kind, error.message)
        await channel.emit(TurnFailed(error))
        # A confirmation rejection may already have moved the session to error.
        self.state.fail(conversation_id, error.message)
        channel.close()
        message_ids = await self.streamer.finish(conversation_id, self.state.render(conversation_id))
        return TurnResult(
            conversation_id=conversation_id,
            ok=False,
            text=error.message,
            error=error,
            message_ids=tuple(message_ids),
        )

    async def _abort_turn(self, turn: _Turn) -> None:
        conversation_id = turn.conversation_id
        if turn.channel is not None:
            turn.channel.close()
        self.gate.cancel_conversation(conversation_id)
        self.state.fail(conversation_id, CANCELLED_MESSAGE)
        await self.streamer.cancel(conversation_id)
        logger.info("turn.cancelled conversation_id={}", conversation_id)

    async def _run_developer_turn(self, turn: _Turn, text: str) -> TurnResult:
        conversation_id = turn.conversation_id
        with bind_conversation(conversation_id):
            try:
                reply = await self.router.route_developer_turn(conversation_id, text)
            except BackendError as exc:
                logger.warning("turn.developer.failed conversation_id={} error={}", conversation_id, exc.message)
                message_ids = await self.streamer.finish(conversation_id, f"❌ {exc.message}")
                return TurnResult(
                    conversation_id=conversation_id,
                    ok=False,
                    text=exc.message,
                    error=exc,
                    message_ids=tuple(message_ids),
                )
            finally:
                self._release(turn)
            message_ids = await self.streamer.finish(conversation_id, reply.text or NO_OUTPUT)
            return TurnResult(
                conversation_id=conversation_id,
                ok=True,
                text=reply.text,
                message_ids=tuple(message_ids),
            )

    def _release(self, turn: _Turn) -> None:
        if turn.ticker is not None:
            turn.ticker.cancel()
        if self._turns.get(turn.conversation_id) is turn:
            del self._turns[turn.conversation_id]

    def _busy(self, conversation_id: str) -> TurnResult:
        error = BusyError(conversation_id)
        logger.info("turn.busy conversation_id={}", conversation_id)
        return TurnResult(conversation_id=conversation_id, ok=False, text=error.message, error=error)

    async def _tick(self, turn: _Turn) -> None:
        # Nothing else re-renders while a backend is silent, so the elapsed time would stall.
        while True:
            await asyncio.sleep(self._status_interval)
            self._refresh(turn.conversation_id)

    def _state_subscriber(self, conversation_id: str) -> Callable[[StreamEvent], object]:
        async def _apply(event: StreamEvent) -> None:
            self.state.apply(conversation_id, event)

        return _apply

    def _confirmation_guard(self, channel: EventChannel) -> Callable[[StreamEvent], object]:
        conversation_id = channel.conversation_id

        async def _guard(event: StreamEvent) -> None:
            if not isinstance(event, ToolInvocation) or not self.gate.is_dangerous(event):
                return
            decision = await self.gate.await_decision(event, conversation_id, emit=channel.emit)
            if decision is not Decision.APPROVED:
                raise ConfirmationRejectedError(event.name, timed_out=decision is Decision.TIMED_OUT)

        return _guard

    def _view_subscriber(self, conversation_id: str) -> Callable[[StreamEvent], object]:
        async def _render(event: StreamEvent) -> None:
            if isinstance(event, TurnCompleted | TurnFailed):
                return
            if isinstance(event, ToolOutcome) and self._show_tool_results:
                await self._post_tool_result(conversation_id, event)
            self._refresh(conversation_id)

        return _render

    async def _post_tool_result(self, conversation_id: str, outcome: ToolOutcome) -> None:
        session = self.state.get(conversation_id)
        if session is None or outcome.tool_invocation_id not in session.resolved_tool_ids:
            return
        tool_name = next(
            (tool.name for tool in session.tool_history if tool.id == outcome.tool_invocation_id),
            None,
        )
        await self.streamer.post(conversation_id, format_tool_result(outcome, tool_name))

    def _on_phase_changed(self, _sender: object, *, conversation_id: str, phase: Phase) -> None:
        if phase.terminal:
            return
        self._refresh(conversation_id)

    def _refresh(self, conversation_id: str) -> None:
        turn = self._turns.get(conversation_id)
        if turn is None or turn.channel is None or turn.channel.closed:
            return
        self.streamer.push(conversation_id, self._live_text(conversation_id))

    def _live_text(self, conversation_id: str) -> str:
        session = self.state.get(conversation_id)
        status_phases = (Phase.CONFIRMATION, Phase.TOOL_USE)
        if session is not None and session.accumulated_text and session.phase not in status_phases:
            return session.accumulated_text
        text = self.state.render(conversation_id, now=self.state.now())
        if session is not None and session.phase is Phase.TOOL_USE and session.current_tool and session.tool_history:
            text += "\n\n" + format_tool_use(session.tool_history[-1])
        return text

    async def cancel_turn(self, conversation_id: str) -> bool:
        turn = self._turns.get(conversation_id)
        if turn is None or turn.task is None:
            return False
        turn.task.cancel()
        await asyncio.wait([turn.task])
        return True

    def resolve_confirmation(self, confirmation_id: str, approved: bool) -> bool:
        return self.gate.resolve(confirmation_id, approved)

    async def handle_callback(self, payload: str, callback_id: str | None = None) -> bool:
        return await self.gate.handle_callback(payload, callback_id)

    def get_provider_status(self) -> list[ProviderStatus]:
        return self.router.get_provider_status()

    def set_provider_override(self, conversation_id: str, provider_id: str) -> str:
        return self.router.set_provider_override(conversation_id, provider_id)

    def clear_provider_override(self, conversation_id: str) -> None:
        self.router.clear_provider_override(conversation_id)

    def reset_conversation(self, conversation_id: str) -> None:
        """Forget backend history so the next turn starts a fresh session."""
        for reset in self._resetters:
            reset(conversation_id)
        if not self.state.is_active(conversation_id):
            self.state.clear(conversation_id)
        logger.info("turn.reset conversation_id={}", conversation_id)

    def render_status(self, conversation_id: str) -> str:
        provider = self.router.get_provider(conversation_id)
        lines = [f"🤖 Provider: {self.router.label(provider)}"]
        if self.state.get(conversation_id) is not None:
            lines.append(self.state.render(conversation_id, now=self.state.now()))
        else:
            lines.append("💤 Ready")
        return "\n\n".join(lines)

    def sweep(self) -> int:
        """Drop idle stream sessions and backend histories; returns how many went."""
        removed = self.state.cleanup(self._session_idle_seconds)
        for sweep in self._sweepers:
            removed += sweep(self._session_idle_seconds)
        return removed

    def start_sweeper(self, interval_seconds: float = 300.0) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return

        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval_seconds)
                try:
                    self.sweep()
                except Exception:
                    logger.exception("turn.sweep.error")

        self._sweeper = asyncio.create_task(_loop(), name="convoy.sweeper")

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        for conversation_id in list(self._turns):
            await self.cancel_turn(conversation_id)
        self.gate.close()
        await self.streamer.close()
        self.state.phase_changed.disconnect(self._on_phase_changed)
