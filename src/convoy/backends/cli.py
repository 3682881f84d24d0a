"""Subprocess streaming backend driving an external agent CLI."""

from __future__ import annotations

import asyncio
import time
from contextlib import suppress
from dataclasses import dataclass, field, replace
from pathlib import Path

from loguru import logger

from convoy.backends.parser import (
    RawLine,
    RecordKind,
    StructuredRecord,
    block_text,
    content_blocks,
    parse_line,
    usage_of,
)
from convoy.backends.sessions import SessionRegistry
from convoy.errors import BackendError, BackendTimeoutError, BackendUnavailableError, BusyError, ErrorKind
from convoy.events import (
    ContentDelta,
    Emit,
    StreamEvent,
    StreamOutcome,
    ToolInvocation,
    ToolOutcome,
    UsageReported,
    discard,
    new_tool_id,
)

STREAM_LIMIT = 16 * 1024 * 1024
NO_OUTPUT_TEXT = "(no output)"
AUTH_HINT_TOKENS = ("auth", "login", "token")


@dataclass(frozen=True)
class CliOptions:
    """Launch options for the agent CLI."""

    working_dir: Path
    binary: str = "claude"
    backend_id: str = "claude-cli"
    model: str | None = None
    timeout_seconds: float = 120.0
    grace_seconds: float = 5.0
    allowed_tools: tuple[str, ...] = ()
    denied_tools: tuple[str, ...] = ()
    system_prompt: str | None = None


def build_cli_args(
    prompt: str,
    *,
    options: CliOptions,
    resume_id: str | None = None,
    model: str | None = None,
) -> list[str]:
    args = ["--output-format", "json"]
    if resume_id:
        args.extend(["--resume", resume_id])
    if resolved_model := model or options.model:
        args.extend(["--model", resolved_model])
    for tool in options.allowed_tools:
        args.extend(["--allowedTools", tool])
    for tool in options.denied_tools:
        args.extend(["--disallowedTools", tool])
    if options.system_prompt:
        args.extend(["--system-prompt", options.system_prompt])
    args.extend(["--", prompt])
    return args


@dataclass
class _RunState:
    text_parts: list[str] = field(default_factory=list)
    result_text: str | None = None
    result_error: str | None = None
    tool_history: list[ToolInvocation] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    saw_output: bool = False
    backend_session_id: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None

    @property
    def streamed_text(self) -> str:
        return "".join(self.text_parts)

    @property
    def text(self) -> str:
        if self.result_text is not None:
            return self.result_text
        return self.streamed_text


class SubprocessEngine:
    """Runs one agent CLI process per call and turns its stdout into stream events."""

    def __init__(self, options: CliOptions) -> None:
        self._options = options
        self._active: set[str] = set()

    @property
    def options(self) -> CliOptions:
        return self._options

    def is_busy(self, conversation_id: str) -> bool:
        return conversation_id in self._active

    async def execute(
        self,
        conversation_id: str,
        prompt: str,
        session_ref: str | None = None,
        *,
        model: str | None = None,
        emit: Emit = discard,
    ) -> StreamOutcome:
        if conversation_id in self._active:
            raise BusyError(conversation_id)
        self._active.add(conversation_id)
        started = time.monotonic()
        try:
            args = build_cli_args(prompt, options=self._options, resume_id=session_ref, model=model)
            process = await self._spawn(conversation_id, args)
            state = _RunState()
            try:
                returncode, stderr_text = await self._pump(process, state, emit)
            except asyncio.CancelledError:
                _kill(process)
                raise
            finally:
                await self._terminate(process)
        finally:
            self._active.discard(conversation_id)

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "cli.engine.exit conversation_id={} code={} duration_ms={} tools={}",
            conversation_id,
            returncode,
            duration_ms,
            len(state.tool_history),
        )
        return self._finalize(
            conversation_id,
            state,
            returncode=returncode,
            stderr_text=stderr_text,
            session_ref=session_ref,
            duration_ms=duration_ms,
        )

    async def _spawn(self, conversation_id: str, args: list[str]) -> asyncio.subprocess.Process:
        binary = self._options.binary
        logger.debug(
            "cli.engine.spawn conversation_id={} binary={} args={}",
            conversation_id,
            binary,
            args[:-1],
        )
        try:
            return await asyncio.create_subprocess_exec(
                binary,
                *args,
                cwd=str(self._options.working_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            logger.error("cli.engine.not_installed binary={}", binary)
            raise BackendUnavailableError(
                f'{binary} not found. The backend is not installed; install the "{binary}" CLI first.',
                backend_id=self._options.backend_id,
            ) from exc
        except OSError as exc:
            logger.error("cli.engine.spawn_failed binary={} error={}", binary, exc)
            raise BackendError(
                f"Failed to run {binary}: {exc}",
                kind=ErrorKind.CLI_ERROR,
                backend_id=self._options.backend_id,
            ) from exc

    async def _pump(self, process: asyncio.subprocess.Process, state: _RunState, emit: Emit) -> tuple[int, str]:
        loop = asyncio.get_running_loop()
        stdout = process.stdout
        if stdout is None:
            raise BackendError(
                "CLI process has no stdout pipe",
                kind=ErrorKind.CLI_ERROR,
                backend_id=self._options.backend_id,
            )
        stderr_chunks: list[bytes] = []
        stderr_task = asyncio.create_task(_drain(process.stderr, stderr_chunks, state))
        try:
            async with asyncio.timeout(self._options.timeout_seconds) as deadline:
                while raw := await stdout.readline():
                    state.saw_output = True
                    parsed = parse_line(raw.decode("utf-8", errors="replace"))
                    if parsed is None:
                        continue
                    for event in self._interpret(parsed, state):
                        # The backend clock stops while subscribers hold the stream.
                        when = deadline.when()
                        remaining = None if when is None else when - loop.time()
                        deadline.reschedule(None)
                        try:
                            await emit(event)
                        finally:
                            if remaining is not None:
                                deadline.reschedule(loop.time() + remaining)
                returncode = await process.wait()
                await stderr_task
        except TimeoutError as exc:
            _kill(process)
            raise self._timeout_error(state) from exc
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
                with suppress(asyncio.CancelledError):
                    await stderr_task
        return returncode, b"".join(stderr_chunks).decode("utf-8", errors="replace")

    def _interpret(self, parsed: RawLine | StructuredRecord, state: _RunState) -> list[StreamEvent]:
        if isinstance(parsed, RawLine):
            text = parsed.text + "\n"
            state.text_parts.append(text)
            return [ContentDelta(text)]

        if parsed.session_id:
            state.backend_session_id = parsed.session_id

        match parsed.kind:
            case RecordKind.ASSISTANT | RecordKind.USER | RecordKind.TOOL_USE | RecordKind.TOOL_RESULT:
                return self._interpret_blocks(parsed, state)
            case RecordKind.RESULT:
                return self._interpret_result(parsed, state)
            case RecordKind.SYSTEM:
                logger.debug("cli.engine.system subtype={}", parsed.data.get("subtype"))
                return []
            case _:
                content = parsed.data.get("content")
                if isinstance(content, str) and content:
                    state.text_parts.append(content)
                    return [ContentDelta(content)]
                return []

    def _interpret_blocks(self, record: StructuredRecord, state: _RunState) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for block in content_blocks(record):
            block_type = block.get("type")
            if block_type == "text" and record.kind is RecordKind.ASSISTANT:
                text = block.get("text")
                if isinstance(text, str) and text:
                    state.text_parts.append(text)
                    events.append(ContentDelta(text))
            elif block_type == "tool_use" and block.get("name"):
                raw_input = block.get("input")
                invocation = ToolInvocation(
                    id=str(block.get("id") or new_tool_id()),
                    name=str(block["name"]),
                    input=dict(raw_input) if isinstance(raw_input, dict) else {},
                )
                state.tool_history.append(invocation)
                state.unresolved.append(invocation.id)
                events.append(invocation)
            elif block_type == "tool_result":
                tool_id = block.get("tool_use_id")
                if tool_id not in state.unresolved:
                    tool_id = state.unresolved[-1] if state.unresolved else None
                if tool_id is None:
                    logger.debug("cli.engine.orphan_tool_result")
                    continue
                state.unresolved.remove(tool_id)
                events.append(
                    ToolOutcome(
                        tool_invocation_id=tool_id,
                        content=block_text(block.get("content")),
                        is_error=bool(block.get("is_error", False)),
                    )
                )
        return events

    def _interpret_result(self, record: StructuredRecord, state: _RunState) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        if usage := usage_of(record):
            state.input_tokens, state.output_tokens = usage
            events.append(UsageReported(*usage))
        result = record.data.get("result")
        if record.data.get("is_error"):
            state.result_error = result if isinstance(result, str) and result else "backend reported an error"
            return events
        if isinstance(result, str) and result:
            if not state.streamed_text:
                events.insert(0, ContentDelta(result))
            state.result_text = result
        return events

    def _finalize(
        self,
        conversation_id: str,
        state: _RunState,
        *,
        returncode: int,
        stderr_text: str,
        session_ref: str | None,
        duration_ms: int,
    ) -> StreamOutcome:
        text = state.text.strip()
        if returncode != 0 and not text:
            logger.error("cli.engine.error conversation_id={} code={} stderr={}", conversation_id, returncode, stderr_text)
            raise self._exit_error(returncode, stderr_text)
        if state.result_error is not None and not text:
            raise BackendError(
                state.result_error,
                kind=ErrorKind.CLI_ERROR,
                backend_id=self._options.backend_id,
                exit_code=returncode,
                stderr=stderr_text,
            )
        if not text:
            text = stderr_text.strip() or NO_OUTPUT_TEXT
        return StreamOutcome(
            text=text,
            backend_id=self._options.backend_id,
            conversation_id=conversation_id,
            session_ref=state.backend_session_id or session_ref,
            duration_ms=duration_ms,
            exit_code=returncode,
            tool_history=tuple(state.tool_history),
            input_tokens=state.input_tokens,
            output_tokens=state.output_tokens,
        )

    def _timeout_error(self, state: _RunState) -> BackendTimeoutError:
        binary = self._options.binary
        message = f"{binary} timed out after {self._options.timeout_seconds:g}s"
        if not state.saw_output:
            message += (
                f"\n\n⚠️ {binary} may not be authenticated. "
                f"Run `{binary}` in your terminal to set up authentication (login) first."
            )
        logger.warning("cli.engine.timeout saw_output={}", state.saw_output)
        return BackendTimeoutError(message, backend_id=self._options.backend_id, saw_output=state.saw_output)

    def _exit_error(self, returncode: int, stderr_text: str) -> BackendError:
        binary = self._options.binary
        detail = stderr_text.strip()
        lowered = detail.casefold()
        if any(token in lowered for token in AUTH_HINT_TOKENS):
            message = (
                f"{binary} authentication error.\n\n"
                f"Run `{binary}` in your terminal to authenticate first.\n\n"
                f"Error: {detail}"
            )
        else:
            message = detail or f"{binary} exited with code {returncode}"
        return BackendError(
            message,
            kind=ErrorKind.CLI_ERROR,
            backend_id=self._options.backend_id,
            exit_code=returncode,
            stderr=stderr_text,
        )

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        with suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self._options.grace_seconds)
        except TimeoutError:
            _kill(process)
            await process.wait()


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    with suppress(ProcessLookupError):
        process.kill()


async def _drain(stream: asyncio.StreamReader | None, sink: list[bytes], state: _RunState) -> None:
    if stream is None:
        return
    while chunk := await stream.read(4096):
        state.saw_output = True
        sink.append(chunk)


class CliBackend:
    """Router-facing adapter that binds the engine to resumable sessions."""

    def __init__(self, engine: SubprocessEngine, sessions: SessionRegistry) -> None:
        self._engine = engine
        self._sessions = sessions

    @property
    def sessions(self) -> SessionRegistry:
        return self._sessions

    async def stream(
        self,
        conversation_id: str,
        message: str,
        *,
        model: str | None = None,
        emit: Emit = discard,
    ) -> StreamOutcome:
        session, is_new = self._sessions.get_or_create(conversation_id)
        outcome = await self._engine.execute(
            conversation_id,
            message,
            session.resume_id,
            model=model,
            emit=emit,
        )
        self._sessions.record_turn(session, outcome.session_ref)
        return replace(outcome, is_new_session=is_new)
