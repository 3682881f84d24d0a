"""Application-level exception types for convoy."""

from __future__ import annotations

from enum import StrEnum


class ConvoyError(Exception):
    """Base exception for convoy."""


class ConfigurationError(ConvoyError):
    """Raised when settings are missing or inconsistent."""


class ErrorKind(StrEnum):
    BUSY = "BUSY"
    TIMEOUT = "TIMEOUT"
    BACKEND_UNAVAILABLE = "BACKEND_UNAVAILABLE"
    BACKEND_ERROR = "BACKEND_ERROR"
    CLI_ERROR = "CLI_ERROR"
    CONFIRMATION_REJECTED = "CONFIRMATION_REJECTED"
    CONFIRMATION_TIMED_OUT = "CONFIRMATION_TIMED_OUT"
    PARSE_ERROR = "PARSE_ERROR"


_TERMINAL_KINDS = frozenset({
    ErrorKind.BUSY,
    ErrorKind.CONFIRMATION_REJECTED,
    ErrorKind.CONFIRMATION_TIMED_OUT,
})


class BackendError(ConvoyError):
    """Failure of one turn or one backend attempt."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.BACKEND_ERROR,
        backend_id: str | None = None,
        exit_code: int | None = None,
        stderr: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.backend_id = backend_id
        self.exit_code = exit_code
        self.stderr = stderr

    @property
    def retryable(self) -> bool:
        """Whether the router may move on to the next fallback candidate."""
        return self.kind not in _TERMINAL_KINDS

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class BusyError(BackendError):
    """Raised when a turn is already in flight for the conversation."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(
            f"A message is already being processed for conversation {conversation_id}. Please wait.",
            kind=ErrorKind.BUSY,
        )
        self.conversation_id = conversation_id


class BackendTimeoutError(BackendError):
    """Raised when a backend exceeds its wall-clock budget."""

    def __init__(self, message: str, *, backend_id: str | None = None, saw_output: bool = False) -> None:
        super().__init__(message, kind=ErrorKind.TIMEOUT, backend_id=backend_id)
        self.saw_output = saw_output


class BackendUnavailableError(BackendError):
    """Raised when a backend is not configured or not installed."""

    def __init__(self, message: str, *, backend_id: str | None = None) -> None:
        super().__init__(message, kind=ErrorKind.BACKEND_UNAVAILABLE, backend_id=backend_id)


class RateLimitedError(BackendError):
    """HTTP backend answered 429."""

    category = "rate_limited"


class ContentRejectedError(BackendError):
    """HTTP backend refused the content."""

    category = "content_rejected"


class ConfirmationRejectedError(BackendError):
    """Raised when a dangerous tool invocation was rejected or timed out."""

    def __init__(self, tool_name: str, *, timed_out: bool = False) -> None:
        if timed_out:
            message = f"Confirmation for {tool_name} timed out; operation cancelled"
            kind = ErrorKind.CONFIRMATION_TIMED_OUT
        else:
            message = f"Operation {tool_name} rejected by user"
            kind = ErrorKind.CONFIRMATION_REJECTED
        super().__init__(message, kind=kind)
        self.tool_name = tool_name
        self.timed_out = timed_out


class FallbackExhaustedError(BackendError):
    """Raised when every candidate backend failed for one turn."""

    def __init__(self, last_error: BackendError, attempts: list[str]) -> None:
        tried = ", ".join(attempts) or "none"
        super().__init__(
            f"All providers failed (tried: {tried}). Last error: {last_error.message}",
            kind=last_error.kind,
            backend_id=last_error.backend_id,
            exit_code=last_error.exit_code,
            stderr=last_error.stderr,
        )
        self.last_error = last_error
        self.attempts = attempts

    @property
    def retryable(self) -> bool:
        return False
