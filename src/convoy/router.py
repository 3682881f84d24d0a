"""Provider routing with deterministic fallback."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace

from loguru import logger

from convoy.backends import DeveloperBackend, StreamingBackend
from convoy.errors import BackendError, BackendUnavailableError, FallbackExhaustedError
from convoy.events import BackendSwitched, Emit, StreamOutcome, discard

CLI_PROVIDER = "claude-cli"
DEFAULT_FALLBACK_ORDER = ("zai", "minimax", "mistral")

PROVIDER_ALIASES: dict[str, str] = {
    "zai": "zai",
    "glm": "zai",
    "glm-4.7": "zai",
    "minimax": "minimax",
    "minimax-v2.1": "minimax",
    "mistral": "mistral",
    "mixtral": "mistral",
    "claude": CLI_PROVIDER,
    "claude-cli": CLI_PROVIDER,
    "cli": CLI_PROVIDER,
}


def _exhausted(last_error: BackendError | None, attempts: list[str], preferred: str) -> BackendError:
    if last_error is None:
        return BackendUnavailableError("No AI provider is available", backend_id=preferred)
    return FallbackExhaustedError(last_error, attempts)


def _always() -> bool:
    return True


@dataclass(frozen=True)
class ProviderDescriptor:
    """Static description of one backend."""

    id: str
    label: str
    is_available: Callable[[], bool] = field(default=_always)
    default_model: str | None = None
    developer_model: str | None = None
    supports_developer_mode: bool = True
    reason: str | None = None


@dataclass(frozen=True)
class ProviderStatus:
    id: str
    label: str
    available: bool
    reason: str | None = None


@dataclass(frozen=True)
class DeveloperReply:
    text: str
    backend_id: str
    was_fallback: bool


@dataclass(frozen=True)
class _Provider:
    descriptor: ProviderDescriptor
    backend: StreamingBackend


class ProviderRouter:
    """Chooses the backend for a conversation and falls back in a fixed order."""

    def __init__(
        self,
        *,
        default_provider: str,
        fallback_order: tuple[str, ...] | list[str] = DEFAULT_FALLBACK_ORDER,
    ) -> None:
        self._providers: dict[str, _Provider] = {}
        self._default_provider = self.normalize_provider(default_provider) or default_provider
        self._fallback_order = tuple(self.normalize_provider(p) or p for p in fallback_order)
        self._provider_overrides: dict[str, str] = {}
        self._model_overrides: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()

    def register(self, descriptor: ProviderDescriptor, backend: StreamingBackend) -> None:
        self._providers[descriptor.id] = _Provider(descriptor, backend)

    @property
    def default_provider(self) -> str:
        return self._default_provider

    @property
    def provider_ids(self) -> list[str]:
        return list(self._providers)

    @staticmethod
    def normalize_provider(name: str) -> str | None:
        return PROVIDER_ALIASES.get(name.strip().casefold())

    def label(self, provider_id: str) -> str:
        provider = self._providers.get(provider_id)
        return provider.descriptor.label if provider else provider_id

    def is_available(self, provider_id: str) -> bool:
        provider = self._providers.get(provider_id)
        if provider is None:
            return False
        try:
            return bool(provider.descriptor.is_available())
        except Exception:
            logger.exception("router.availability.error provider={}", provider_id)
            return False

    def get_provider_status(self) -> list[ProviderStatus]:
        return [
            ProviderStatus(
                id=provider_id,
                label=provider.descriptor.label,
                available=self.is_available(provider_id),
                reason=provider.descriptor.reason,
            )
            for provider_id, provider in self._providers.items()
        ]

    def set_provider_override(self, conversation_id: str, provider_id: str) -> str:
        resolved = self.normalize_provider(provider_id) or provider_id
        if resolved not in self._providers:
            raise BackendUnavailableError(f"Unknown provider: {provider_id}", backend_id=provider_id)
        with self._lock:
            self._provider_overrides[conversation_id] = resolved
        logger.info("router.override.set conversation_id={} provider={}", conversation_id, resolved)
        return resolved

    def clear_provider_override(self, conversation_id: str) -> None:
        with self._lock:
            self._provider_overrides.pop(conversation_id, None)

    def set_model_override(self, conversation_id: str, provider_id: str, model: str) -> None:
        with self._lock:
            self._model_overrides.setdefault(conversation_id, {})[provider_id] = model

    def clear_model_override(self, conversation_id: str, provider_id: str | None = None) -> None:
        with self._lock:
            if provider_id is None:
                self._model_overrides.pop(conversation_id, None)
                return
            overrides = self._model_overrides.get(conversation_id)
            if overrides is None:
                return
            overrides.pop(provider_id, None)
            if not overrides:
                del self._model_overrides[conversation_id]

    def get_model(self, conversation_id: str, provider_id: str) -> str | None:
        with self._lock:
            override = self._model_overrides.get(conversation_id, {}).get(provider_id)
        if override:
            return override
        provider = self._providers.get(provider_id)
        return provider.descriptor.default_model if provider else None

    def get_developer_model(self, conversation_id: str, provider_id: str) -> str | None:
        with self._lock:
            override = self._model_overrides.get(conversation_id, {}).get(provider_id)
        if override:
            return override
        provider = self._providers.get(provider_id)
        if provider is None:
            return None
        return provider.descriptor.developer_model or provider.descriptor.default_model

    def get_provider(self, conversation_id: str) -> str:
        """Resolve the preferred provider: override, then default, then first available fallback."""
        with self._lock:
            override = self._provider_overrides.get(conversation_id)
        if override and self.is_available(override):
            return override
        if self.is_available(self._default_provider):
            return self._default_provider
        sequence = self.fallback_sequence(override or self._default_provider)
        return sequence[0] if sequence else (override or self._default_provider)

    def fallback_sequence(self, provider_id: str) -> list[str]:
        sequence: list[str] = []
        for candidate in (provider_id, *self._fallback_order):
            if candidate not in sequence and self.is_available(candidate):
                sequence.append(candidate)
        return sequence

    def developer_fallback_sequence(self, provider_id: str) -> list[str]:
        return [
            candidate
            for candidate in self.fallback_sequence(provider_id)
            if self._providers[candidate].descriptor.supports_developer_mode
            and isinstance(self._providers[candidate].backend, DeveloperBackend)
        ]

    async def route(self, conversation_id: str, message: str, emit: Emit = discard) -> StreamOutcome:
        preferred = self.get_provider(conversation_id)
        sequence = self.fallback_sequence(preferred)
        if not sequence:
            raise BackendUnavailableError("No AI provider is available", backend_id=preferred)

        last_error: BackendError | None = None
        attempts: list[str] = []
        for candidate in sequence:
            if last_error is not None:
                await emit(BackendSwitched(backend_id=candidate, reason=last_error.message))
            attempts.append(candidate)
            backend = self._providers[candidate].backend
            logger.info("router.attempt conversation_id={} provider={}", conversation_id, candidate)
            try:
                outcome = await backend.stream(
                    conversation_id,
                    message,
                    model=self.get_model(conversation_id, candidate),
                    emit=emit,
                )
            except BackendError as exc:
                if not exc.retryable:
                    raise
                last_error = exc
            except Exception as exc:
                logger.exception("router.backend.crash provider={}", candidate)
                last_error = BackendError(str(exc) or type(exc).__name__, backend_id=candidate)
            else:
                return replace(outcome, backend_id=candidate, was_fallback=candidate != preferred)
            logger.warning(
                "router.fallback conversation_id={} provider={} kind={} error={}",
                conversation_id,
                candidate,
                last_error.kind,
                last_error.message,
            )

        raise _exhausted(last_error, attempts, preferred)

    async def route_developer_turn(self, conversation_id: str, message: str) -> DeveloperReply:
        preferred = self.get_provider(conversation_id)
        sequence = self.developer_fallback_sequence(preferred)
        if not sequence:
            raise BackendUnavailableError("No developer-capable provider available", backend_id=preferred)

        last_error: BackendError | None = None
        attempts: list[str] = []
        for candidate in sequence:
            attempts.append(candidate)
            backend = self._providers[candidate].backend
            if not isinstance(backend, DeveloperBackend):
                raise BackendUnavailableError(f"{candidate} has no developer mode", backend_id=candidate)
            try:
                text = await backend.develop(
                    conversation_id,
                    message,
                    model=self.get_developer_model(conversation_id, candidate),
                )
            except BackendError as exc:
                if not exc.retryable:
                    raise
                last_error = exc
            except Exception as exc:
                logger.exception("router.developer.crash provider={}", candidate)
                last_error = BackendError(str(exc) or type(exc).__name__, backend_id=candidate)
            else:
                return DeveloperReply(text=text, backend_id=candidate, was_fallback=candidate != preferred)
            logger.warning("router.developer.fallback provider={} error={}", candidate, last_error.message)

        raise _exhausted(last_error, attempts, preferred)
