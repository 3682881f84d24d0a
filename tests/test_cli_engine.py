from __future__ import annotations

import asyncio
import json
import os
from dataclasses import replace
from pathlib import Path

import pytest

from convoy.backends.cli import CliBackend, CliOptions, SubprocessEngine, build_cli_args
from convoy.backends.sessions import SessionRegistry
from convoy.errors import BackendError, BackendTimeoutError, BackendUnavailableError, BusyError, ErrorKind
from convoy.events import ContentDelta, StreamEvent, ToolInvocation, ToolOutcome, TurnCompleted, UsageReported
from convoy.state import Phase, StreamStateMachine


def _engine(binary: Path | str, tmp_path: Path, **overrides: object) -> SubprocessEngine:
    options = CliOptions(working_dir=tmp_path, binary=str(binary), timeout_seconds=5.0, grace_seconds=0.5)
    return SubprocessEngine(replace(options, **overrides))


class Collector:
    def __init__(self, delay: float = 0.0) -> None:
        self.events: list[StreamEvent] = []
        self.delay = delay

    async def __call__(self, event: StreamEvent) -> None:
        self.events.append(event)
        if self.delay:
            await asyncio.sleep(self.delay)


def test_build_cli_args_orders_flags_before_prompt(tmp_path: Path) -> None:
    options = CliOptions(
        working_dir=tmp_path,
        model="sonnet",
        allowed_tools=("Read",),
        denied_tools=("Bash",),
        system_prompt="be brief",
    )

    args = build_cli_args("-rf everything", options=options, resume_id="sess-1")

    assert args[:2] == ["--output-format", "json"]
    assert args[args.index("--resume") + 1] == "sess-1"
    assert args[args.index("--model") + 1] == "sonnet"
    assert args[args.index("--allowedTools") + 1] == "Read"
    assert args[args.index("--disallowedTools") + 1] == "Bash"
    assert args[-2:] == ["--", "-rf everything"]


def test_build_cli_args_without_resume(tmp_path: Path) -> None:
    args = build_cli_args("hi", options=CliOptions(working_dir=tmp_path))

    assert "--resume" not in args
    assert "--model" not in args


@pytest.mark.asyncio
async def test_result_record_becomes_final_text_and_completes_session(make_cli, tmp_path: Path) -> None:
    script = make_cli(
        """
        print('{"type":"result","result":"OK"}', flush=True)
        """
    )
    engine = _engine(script, tmp_path)
    state = StreamStateMachine()
    state.begin("c1", "claude-cli")
    collector = Collector()

    async def emit(event: StreamEvent) -> None:
        state.apply("c1", event)
        await collector(event)

    outcome = await engine.execute("c1", "hello", emit=emit)
    state.apply("c1", TurnCompleted(outcome))

    assert outcome.text == "OK"
    assert collector.events == [ContentDelta("OK")]
    assert state.get("c1").phase is Phase.COMPLETE
    assert state.get("c1").accumulated_text == "OK"


@pytest.mark.asyncio
async def test_streamed_blocks_produce_ordered_events(make_cli, tmp_path: Path) -> None:
    script = make_cli(
        """
        import json
        def out(obj):
            print(json.dumps(obj), flush=True)
        out({"type": "system", "subtype": "init", "session_id": "sess-9"})
        out({"type": "assistant", "message": {"content": [{"type": "text", "text": "Looking. "}]}})
        out({"type": "assistant", "message": {"content": [
            {"type": "tool_use", "id": "tu_1", "name": "Read", "input": {"file_path": "a.txt"}}
        ]}})
        out({"type": "user", "message": {"content": [
            {"type": "tool_result", "tool_use_id": "tu_1", "content": [{"type": "text", "text": "data"}]}
        ]}})
        out({"type": "assistant", "message": {"content": [{"type": "text", "text": "Done."}]}})
        out({"type": "result", "result": "Looking. Done.", "usage": {"input_tokens": 10, "output_tokens": 5}})
        """
    )
    collector = Collector()

    outcome = await _engine(script, tmp_path).execute("c1", "read a.txt", emit=collector)

    kinds = [type(event).__name__ for event in collector.events]
    assert kinds == ["ContentDelta", "ToolInvocation", "ToolOutcome", "ContentDelta", "UsageReported"]
    invocation = collector.events[1]
    assert isinstance(invocation, ToolInvocation)
    assert invocation.id == "tu_1"
    assert invocation.input == {"file_path": "a.txt"}
    outcome_event = collector.events[2]
    assert isinstance(outcome_event, ToolOutcome)
    assert outcome_event.tool_invocation_id == "tu_1"
    assert outcome_event.content == "data"
    assert collector.events[4] == UsageReported(10, 5)
    assert outcome.text == "Looking. Done."
    assert outcome.session_ref == "sess-9"
    assert [tool.name for tool in outcome.tool_history] == ["Read"]
    assert (outcome.input_tokens, outcome.output_tokens) == (10, 5)


@pytest.mark.asyncio
async def test_tool_result_without_id_resolves_latest_invocation(make_cli, tmp_path: Path) -> None:
    script = make_cli(
        """
        import json
        print(json.dumps({"type": "tool_use", "name": "Bash", "input": {"command": "ls"}}), flush=True)
        print(json.dumps({"type": "tool_result", "content": "a b"}), flush=True)
        print(json.dumps({"type": "result", "result": "listed"}), flush=True)
        """
    )
    collector = Collector()

    await _engine(script, tmp_path).execute("c1", "ls", emit=collector)

    invocation, outcome = collector.events[0], collector.events[1]
    assert isinstance(invocation, ToolInvocation)
    assert isinstance(outcome, ToolOutcome)
    assert outcome.tool_invocation_id == invocation.id


@pytest.mark.asyncio
async def test_plain_text_lines_stream_as_content(make_cli, tmp_path: Path) -> None:
    script = make_cli(
        """
        print("hello", flush=True)
        print("", flush=True)
        print("world", flush=True)
        """
    )
    collector = Collector()

    outcome = await _engine(script, tmp_path).execute("c1", "hi", emit=collector)

    assert collector.events == [ContentDelta("hello\n"), ContentDelta("world\n")]
    assert outcome.text == "hello\nworld"


@pytest.mark.asyncio
async def test_zero_output_timeout_hints_at_authentication(make_cli, tmp_path: Path) -> None:
    script = make_cli(
        """
        import time
        time.sleep(30)
        """
    )
    engine = _engine(script, tmp_path, timeout_seconds=0.5)

    with pytest.raises(BackendTimeoutError) as exc_info:
        await engine.execute("c1", "hi")

    assert exc_info.value.kind is ErrorKind.TIMEOUT
    assert exc_info.value.saw_output is False
    assert "login" in exc_info.value.message
    assert not engine.is_busy("c1")


@pytest.mark.asyncio
async def test_timeout_after_output_has_no_auth_hint(make_cli, tmp_path: Path) -> None:
    script = make_cli(
        """
        import time
        print("working", flush=True)
        time.sleep(30)
        """
    )

    with pytest.raises(BackendTimeoutError) as exc_info:
        await _engine(script, tmp_path, timeout_seconds=0.5).execute("c1", "hi")

    assert exc_info.value.saw_output is True
    assert "login" not in exc_info.value.message


@pytest.mark.asyncio
async def test_time_spent_in_subscribers_does_not_count(make_cli, tmp_path: Path) -> None:
    script = make_cli(
        """
        print('{"type":"assistant","message":{"content":"wait for me"}}', flush=True)
        print('{"type":"result","result":"finished"}', flush=True)
        """
    )

    outcome = await _engine(script, tmp_path, timeout_seconds=0.5).execute("c1", "hi", emit=Collector(delay=0.8))

    assert outcome.text == "finished"


@pytest.mark.asyncio
async def test_nonzero_exit_without_output_is_cli_error(make_cli, tmp_path: Path) -> None:
    script = make_cli(
        """
        import sys
        sys.stderr.write("boom\\n")
        sys.exit(3)
        """
    )

    with pytest.raises(BackendError) as exc_info:
        await _engine(script, tmp_path).execute("c1", "hi")

    assert exc_info.value.kind is ErrorKind.CLI_ERROR
    assert exc_info.value.exit_code == 3
    assert "boom" in exc_info.value.message


@pytest.mark.asyncio
async def test_auth_failure_in_stderr_is_explained(make_cli, tmp_path: Path) -> None:
    script = make_cli(
        """
        import sys
        sys.stderr.write("Invalid API key. Please run /login\\n")
        sys.exit(1)
        """
    )

    with pytest.raises(BackendError) as exc_info:
        await _engine(script, tmp_path).execute("c1", "hi")

    assert "authentication" in exc_info.value.message
    assert "Invalid API key" in exc_info.value.message


@pytest.mark.asyncio
async def test_nonzero_exit_with_output_still_succeeds(make_cli, tmp_path: Path) -> None:
    script = make_cli(
        """
        import sys
        print('{"type":"result","result":"partial answer"}', flush=True)
        sys.exit(1)
        """
    )

    outcome = await _engine(script, tmp_path).execute("c1", "hi")

    assert outcome.text == "partial answer"
    assert outcome.exit_code == 1


@pytest.mark.asyncio
async def test_error_result_without_text_fails(make_cli, tmp_path: Path) -> None:
    script = make_cli(
        """
        print('{"type":"result","is_error":true,"result":"tool crashed"}', flush=True)
        """
    )

    with pytest.raises(BackendError) as exc_info:
        await _engine(script, tmp_path).execute("c1", "hi")

    assert exc_info.value.kind is ErrorKind.CLI_ERROR
    assert exc_info.value.message == "tool crashed"


@pytest.mark.asyncio
async def test_missing_binary_is_unavailable(tmp_path: Path) -> None:
    engine = _engine(tmp_path / "does-not-exist", tmp_path)

    with pytest.raises(BackendUnavailableError) as exc_info:
        await engine.execute("c1", "hi")

    assert exc_info.value.kind is ErrorKind.BACKEND_UNAVAILABLE
    assert not engine.is_busy("c1")


@pytest.mark.asyncio
async def test_second_call_for_same_conversation_is_busy(make_cli, tmp_path: Path) -> None:
    script = make_cli(
        """
        import time
        time.sleep(0.3)
        print('{"type":"result","result":"first"}', flush=True)
        """
    )
    engine = _engine(script, tmp_path)

    first = asyncio.create_task(engine.execute("c1", "one"))
    await asyncio.sleep(0)
    assert engine.is_busy("c1")

    with pytest.raises(BusyError):
        await engine.execute("c1", "two")

    other = await engine.execute("c2", "three")
    assert other.text == "first"
    assert (await first).text == "first"
    assert not engine.is_busy("c1")


@pytest.mark.asyncio
async def test_cancellation_kills_the_process(make_cli, tmp_path: Path) -> None:
    pid_file = tmp_path / "pid"
    script = make_cli(
        f"""
        import os, time
        with open({str(pid_file)!r}, "w") as fh:
            fh.write(str(os.getpid()))
        time.sleep(30)
        """
    )
    engine = _engine(script, tmp_path, timeout_seconds=60.0)

    task = asyncio.create_task(engine.execute("c1", "hi"))
    for _ in range(200):
        if pid_file.exists() and pid_file.read_text():
            break
        await asyncio.sleep(0.02)
    pid = int(pid_file.read_text())

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
    assert not engine.is_busy("c1")


@pytest.mark.asyncio
async def test_subscriber_error_stops_the_run(make_cli, tmp_path: Path) -> None:
    script = make_cli(
        """
        import json, time
        print(json.dumps({"type": "tool_use", "id": "t1", "name": "Write", "input": {}}), flush=True)
        time.sleep(30)
        """
    )

    async def reject(event: StreamEvent) -> None:
        raise BackendError("rejected", kind=ErrorKind.CONFIRMATION_REJECTED)

    with pytest.raises(BackendError) as exc_info:
        await _engine(script, tmp_path, timeout_seconds=60.0).execute("c1", "hi", emit=reject)

    assert exc_info.value.kind is ErrorKind.CONFIRMATION_REJECTED


@pytest.mark.asyncio
async def test_cli_backend_resumes_with_captured_session_id(make_cli, tmp_path: Path) -> None:
    script = make_cli(
        """
        import json, sys
        print(json.dumps({"type": "result", "result": json.dumps(sys.argv[1:]), "session_id": "sess-42"}), flush=True)
        """
    )
    sessions = SessionRegistry(tmp_path)
    backend = CliBackend(_engine(script, tmp_path), sessions)

    first = await backend.stream("c1", "one")
    second = await backend.stream("c1", "two")

    assert first.is_new_session is True
    assert "--resume" not in json.loads(first.text)
    assert second.is_new_session is False
    args = json.loads(second.text)
    assert args[args.index("--resume") + 1] == "sess-42"
    assert sessions.active("c1").message_count == 2


@pytest.mark.asyncio
async def test_process_without_stdout_pipe_is_cli_error(tmp_path: Path) -> None:
    class PipelessProcess:
        stdout = None
        stderr = None

    engine = _engine("agent", tmp_path)

    with pytest.raises(BackendError) as excinfo:
        await engine._pump(PipelessProcess(), None, Collector())

    assert excinfo.value.kind is ErrorKind.CLI_ERROR
    assert "stdout" in excinfo.value.message
