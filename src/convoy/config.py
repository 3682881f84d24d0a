"""Configuration management for convoy."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class HttpProviderSettings(BaseModel):
    """One HTTP completion backend."""

    id: str
    label: str
    model: str = Field(description="Model in provider:model form, e.g. 'openai:glm-4.7'")
    api_key: str | None = None
    api_base: str | None = None
    developer_model: str | None = None
    max_tokens: int = 4096
    max_retries: int = Field(default=2, description="Retries republic makes before the router falls back")

    @property
    def available(self) -> bool:
        return bool(self.api_key)


def _default_http_providers() -> list[HttpProviderSettings]:
    return [
        HttpProviderSettings(
            id="zai",
            label="Z.ai GLM-4.7",
            model="openai:glm-4.7",
            api_base="https://api.z.ai/api/coding/paas/v4",
        ),
        HttpProviderSettings(
            id="minimax",
            label="MiniMax v2.1",
            model="openai:MiniMax-M2.1",
            api_base="https://api.minimax.io/v1",
        ),
        HttpProviderSettings(
            id="mistral",
            label="Mistral",
            model="mistral:mistral-large-latest",
        ),
    ]


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="CONVOY_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    workspace: Path | None = Field(None, description="Working directory handed to the CLI backend")

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Log level")
    log_profile: str = Field(default="default", description="Log profile: default or chat")

    # Telegram Configuration
    telegram_token: str | None = Field(None, description="Bot token")
    telegram_allow_from: set[str] = Field(default_factory=set, description="Allowed user ids or usernames")

    # Routing Configuration
    default_provider: str = Field(default="claude-cli", description="Provider used when no override is set")
    fallback_order: list[str] = Field(default_factory=lambda: ["zai", "minimax", "mistral"])
    http_providers: list[HttpProviderSettings] = Field(default_factory=_default_http_providers)

    # CLI backend Configuration
    cli_enabled: bool = Field(default=True, description="Register the subprocess backend")
    cli_binary: str = Field(default="claude", description="Agent CLI executable")
    cli_model: str | None = Field(None, description="Model override passed with --model")
    cli_timeout_seconds: float = Field(default=120.0, description="Wall-clock budget per CLI call")
    cli_grace_seconds: float = Field(default=5.0, description="Delay between SIGTERM and SIGKILL")
    cli_allowed_tools: list[str] = Field(default_factory=list)
    cli_denied_tools: list[str] = Field(default_factory=list)
    cli_system_prompt: str | None = None

    # Outbound and confirmation Configuration
    max_message_length: int = Field(default=4000, description="Maximum characters per outbound message")
    edit_interval_seconds: float = Field(default=0.5, description="Minimum delay between message edits")
    confirmation_timeout_seconds: float = Field(default=300.0, description="Auto-reject delay for confirmations")
    session_idle_seconds: float = Field(default=3600.0, description="Idle time before conversation state is dropped")
    show_tool_results: bool = Field(default=True, description="Post tool output as separate messages")

    def resolve_workspace(self) -> Path:
        return (self.workspace or Path.cwd()).expanduser().resolve()


def load_settings(workspace: Path | None = None) -> Settings:
    """Load settings from the environment and the workspace .env file."""

    if workspace is None:
        return Settings()
    env_file = workspace / ".env"
    settings = Settings(_env_file=env_file if env_file.is_file() else None)  # type: ignore[call-arg]
    if settings.workspace is None:
        settings = settings.model_copy(update={"workspace": workspace})
    return settings
