"""Interactive approval for destructive tool invocations."""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

from loguru import logger

from convoy.events import (
    ConfirmationRequested,
    ConfirmationResolved,
    Decision,
    Emit,
    ToolInvocation,
    discard,
)
from convoy.transport import Button, ChatTransport

DEFAULT_TIMEOUT_SECONDS = 300.0

DANGEROUS_TOOLS = frozenset({"write", "edit", "multiedit", "delete", "notebookedit"})
SHELL_TOOLS = frozenset({"bash", "shell"})
DANGEROUS_COMMANDS = (
    "rm -rf",
    "rm -r",
    "del ",
    "delete",
    "format",
    "mkfs",
    "dd if=",
    "git push --force",
    "git push -f",
    "git reset --hard",
    "chmod 000",
    "> /dev/",
)

APPROVE = "approve"
REJECT = "reject"


def is_dangerous_command(command: str) -> bool:
    lowered = command.lower()
    return any(pattern in lowered for pattern in DANGEROUS_COMMANDS)


def is_dangerous(invocation: ToolInvocation) -> bool:
    name = invocation.name.lower()
    if name in DANGEROUS_TOOLS:
        return True
    if name in SHELL_TOOLS:
        command = invocation.input.get("command")
        return isinstance(command, str) and is_dangerous_command(command)
    return False


def format_confirmation_message(invocation: ToolInvocation) -> str:
    name = invocation.name.lower()
    data = invocation.input
    lines = ["⚠️ *Confirmation Required*", "", "The assistant wants to execute:", ""]
    if name in SHELL_TOOLS:
        lines.append(f"```\n{data.get('command', '')}\n```")
    elif name == "write":
        content = data.get("content") or ""
        lines.append(f"File: `{data.get('file_path', '?')}`")
        lines.append(f"Action: Write {len(content)} bytes")
    elif name in {"edit", "multiedit", "notebookedit"}:
        lines.append(f"File: `{data.get('file_path') or data.get('notebook_path', '?')}`")
        lines.append("Action: Edit file")
    else:
        lines.append(f"Tool: {invocation.name}")
        lines.append(f"Input: {json.dumps(data, indent=2, ensure_ascii=False, default=str)}")
    lines.extend(["", "⚠️ This action could be destructive. Approve?"])
    return "\n".join(lines)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ConfirmationRequest:
    id: str
    conversation_id: str
    invocation: ToolInvocation
    future: asyncio.Future[Decision] = field(repr=False)
    outbound_message_ref: int | None = None
    created_at: datetime = field(default_factory=_utcnow)
    decision: Decision = Decision.PENDING
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


class ConfirmationGate:
    """Suspends a turn on a dangerous tool invocation until the user decides."""

    def __init__(self, transport: ChatTransport, *, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self._transport = transport
        self._timeout_seconds = timeout_seconds
        self._pending: dict[str, ConfirmationRequest] = {}
        self._by_invocation: dict[str, str] = {}
        self._cleanup_tasks: set[asyncio.Task[None]] = set()

    is_dangerous = staticmethod(is_dangerous)

    def pending_count(self) -> int:
        return len(self._pending)

    def get(self, confirmation_id: str) -> ConfirmationRequest | None:
        return self._pending.get(confirmation_id)

    async def request_approval(
        self,
        invocation: ToolInvocation,
        conversation_id: str,
        *,
        emit: Emit = discard,
    ) -> bool:
        decision = await self.await_decision(invocation, conversation_id, emit=emit)
        return decision is Decision.APPROVED

    async def await_decision(
        self,
        invocation: ToolInvocation,
        conversation_id: str,
        *,
        emit: Emit = discard,
    ) -> Decision:
        """Ask for approval and wait for exactly one decision."""
        existing_id = self._by_invocation.get(invocation.id)
        if existing_id is not None and existing_id in self._pending:
            return await self._wait(self._pending[existing_id])

        loop = asyncio.get_running_loop()
        request = ConfirmationRequest(
            id=f"cf_{uuid.uuid4().hex[:12]}",
            conversation_id=conversation_id,
            invocation=invocation,
            future=loop.create_future(),
        )
        self._pending[request.id] = request
        self._by_invocation[invocation.id] = request.id
        logger.info(
            "confirmation.request conversation_id={} confirmation_id={} tool={}",
            conversation_id,
            request.id,
            invocation.name,
        )

        try:
            await emit(ConfirmationRequested(confirmation_id=request.id, invocation=invocation))
            request.outbound_message_ref = await self._transport.send_message(
                conversation_id,
                format_confirmation_message(invocation),
                buttons=[
                    Button("✅ Approve", f"{request.id}:{APPROVE}"),
                    Button("❌ Reject", f"{request.id}:{REJECT}"),
                ],
            )
        except asyncio.CancelledError:
            self._settle(request.id, Decision.REJECTED)
            raise
        except Exception:
            logger.exception("confirmation.send.error conversation_id={} confirmation_id={}", conversation_id, request.id)
            self._settle(request.id, Decision.REJECTED)
        else:
            if not request.future.done():
                request.timer = loop.call_later(self._timeout_seconds, self._expire, request.id)

        decision = await self._wait(request)
        await emit(ConfirmationResolved(confirmation_id=request.id, decision=decision))
        return decision

    async def _wait(self, request: ConfirmationRequest) -> Decision:
        try:
            return await asyncio.shield(request.future)
        except asyncio.CancelledError:
            self._settle(request.id, Decision.REJECTED)
            raise

    def resolve(self, confirmation_id: str, approved: bool) -> bool:
        """Apply a user decision; late or unknown ids return False."""
        return self._settle(confirmation_id, Decision.APPROVED if approved else Decision.REJECTED)

    async def handle_callback(self, payload: str, callback_id: str | None = None) -> bool:
        confirmation_id, _, action = payload.rpartition(":")
        if not confirmation_id or action not in (APPROVE, REJECT):
            logger.warning("confirmation.callback.invalid payload={}", payload)
            await self._answer(callback_id, "Invalid action")
            return False
        approved = action == APPROVE
        resolved = self.resolve(confirmation_id, approved)
        if not resolved:
            reply = "This confirmation has expired"
        else:
            reply = "✅ Approved" if approved else "❌ Rejected"
        await self._answer(callback_id, reply)
        return resolved

    async def _answer(self, callback_id: str | None, reply: str) -> None:
        # The client keeps a spinner on the button until the callback is answered.
        if callback_id is None:
            return
        try:
            await self._transport.answer_callback(callback_id, reply)
        except Exception:
            logger.exception("confirmation.callback.answer_error callback_id={}", callback_id)

    def cancel_conversation(self, conversation_id: str) -> int:
        ids = [request.id for request in self._pending.values() if request.conversation_id == conversation_id]
        for confirmation_id in ids:
            self._settle(confirmation_id, Decision.REJECTED)
        return len(ids)

    def close(self) -> None:
        for confirmation_id in list(self._pending):
            self._settle(confirmation_id, Decision.REJECTED)

    def _expire(self, confirmation_id: str) -> None:
        if self._settle(confirmation_id, Decision.TIMED_OUT):
            logger.info("confirmation.timeout confirmation_id={}", confirmation_id)

    def _settle(self, confirmation_id: str, decision: Decision) -> bool:
        request = self._pending.pop(confirmation_id, None)
        if request is None:
            return False
        if self._by_invocation.get(request.invocation.id) == confirmation_id:
            del self._by_invocation[request.invocation.id]
        if request.timer is not None:
            request.timer.cancel()
            request.timer = None
        request.decision = decision
        if not request.future.done():
            request.future.set_result(decision)
        logger.info(
            "confirmation.resolved conversation_id={} confirmation_id={} decision={}",
            request.conversation_id,
            confirmation_id,
            decision,
        )
        if request.outbound_message_ref is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning("confirmation.delete.skipped confirmation_id={} reason=no_loop", confirmation_id)
                return True
            task = loop.create_task(
                self._delete_message(request.id, request.conversation_id, request.outbound_message_ref)
            )
            self._cleanup_tasks.add(task)
            task.add_done_callback(self._cleanup_tasks.discard)
        return True

    async def _delete_message(self, confirmation_id: str, conversation_id: str, message_id: int) -> None:
        try:
            await self._transport.delete_message(conversation_id, message_id)
        except Exception:
            logger.exception("confirmation.delete.error confirmation_id={}", confirmation_id)
