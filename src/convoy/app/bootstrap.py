"""Runtime bootstrap helpers."""

from __future__ import annotations

import shutil
from collections.abc import Callable
from dataclasses import dataclass, field

from loguru import logger

from convoy.app.runtime import TurnManager
from convoy.backends.cli import CliBackend, CliOptions, SubprocessEngine
from convoy.backends.http import ChatBackend, RepublicCompletionClient
from convoy.backends.sessions import SessionRegistry
from convoy.chunker import OutboundStreamer
from convoy.config import HttpProviderSettings, Settings
from convoy.confirmation import ConfirmationGate
from convoy.router import CLI_PROVIDER, ProviderDescriptor, ProviderRouter
from convoy.state import StreamStateMachine
from convoy.transport import ChatTransport


def cli_options(settings: Settings) -> CliOptions:
    return CliOptions(
        working_dir=settings.resolve_workspace(),
        binary=settings.cli_binary,
        backend_id=CLI_PROVIDER,
        model=settings.cli_model,
        timeout_seconds=settings.cli_timeout_seconds,
        grace_seconds=settings.cli_grace_seconds,
        allowed_tools=tuple(settings.cli_allowed_tools),
        denied_tools=tuple(settings.cli_denied_tools),
        system_prompt=settings.cli_system_prompt,
    )


def _binary_available(binary: str) -> Callable[[], bool]:
    def _check() -> bool:
        return shutil.which(binary) is not None

    return _check


def _api_key_set(provider: HttpProviderSettings) -> Callable[[], bool]:
    def _check() -> bool:
        return provider.available

    return _check


@dataclass
class ConversationHooks:
    """Backend callbacks the turn manager runs on /new and on each sweep."""

    resetters: list[Callable[[str], object]] = field(default_factory=list)
    sweepers: list[Callable[[float], int]] = field(default_factory=list)


def build_router(settings: Settings) -> tuple[ProviderRouter, ConversationHooks]:
    """Register every configured backend; returns the router and its conversation hooks."""
    router = ProviderRouter(default_provider=settings.default_provider, fallback_order=settings.fallback_order)
    hooks = ConversationHooks()

    if settings.cli_enabled:
        options = cli_options(settings)
        sessions = SessionRegistry(options.working_dir)
        router.register(
            ProviderDescriptor(
                id=CLI_PROVIDER,
                label="Claude Code CLI",
                is_available=_binary_available(options.binary),
                default_model=options.model,
                supports_developer_mode=False,
                reason=f"requires the {options.binary} CLI on PATH",
            ),
            CliBackend(SubprocessEngine(options), sessions),
        )
        hooks.resetters.append(sessions.end)
        hooks.sweepers.append(sessions.cleanup)

    for provider in settings.http_providers:
        backend = ChatBackend(provider.id, RepublicCompletionClient(provider))
        router.register(
            ProviderDescriptor(
                id=provider.id,
                label=provider.label,
                is_available=_api_key_set(provider),
                default_model=provider.model,
                developer_model=provider.developer_model,
                reason=f"set CONVOY_HTTP_PROVIDERS api_key for {provider.id}",
            ),
            backend,
        )
        hooks.resetters.append(backend.reset)
        hooks.sweepers.append(backend.cleanup)

    logger.info(
        "runtime.router.ready default={} providers={}",
        router.default_provider,
        ",".join(router.provider_ids),
    )
    return router, hooks


def build_runtime(settings: Settings, transport: ChatTransport) -> TurnManager:
    """Build the turn manager and all of its collaborators for one transport."""
    router, hooks = build_router(settings)
    return TurnManager(
        router=router,
        state=StreamStateMachine(),
        gate=ConfirmationGate(transport, timeout_seconds=settings.confirmation_timeout_seconds),
        streamer=OutboundStreamer(
            transport,
            max_length=settings.max_message_length,
            interval=settings.edit_interval_seconds,
        ),
        session_idle_seconds=settings.session_idle_seconds,
        resetters=hooks.resetters,
        sweepers=hooks.sweepers,
        show_tool_results=settings.show_tool_results,
    )
