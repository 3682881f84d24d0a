"""Command-line entry points."""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from convoy.app.bootstrap import build_router, build_runtime
from convoy.channels.console import ConsoleTransport
from convoy.channels.telegram import TelegramChannel, TelegramConfig
from convoy.config import Settings, load_settings
from convoy.errors import BackendUnavailableError
from convoy.logging_utils import configure_logging

app = typer.Typer(name="convoy", help="Chat bridge for agent CLIs and HTTP models", add_completion=False)


def _settings(workspace: Path | None) -> Settings:
    settings = load_settings(workspace)
    configure_logging(profile="chat" if settings.log_profile == "chat" else "default", level=settings.log_level)
    return settings


@app.command()
def run(
    message: str = typer.Argument(..., help="Message to send"),
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace root"),  # noqa: B008
    conversation: str = typer.Option("0", "--conversation", "-c", help="Conversation id"),
    provider: str | None = typer.Option(None, "--provider", "-p", help="Provider for this turn"),
) -> None:
    """Run one turn locally; confirmations are answered on the console."""

    settings = _settings(workspace)
    transport = ConsoleTransport()
    runtime = build_runtime(settings, transport)
    transport.bind(runtime.handle_callback)
    if provider:
        try:
            runtime.set_provider_override(conversation, provider)
        except BackendUnavailableError as exc:
            typer.echo(exc.message, err=True)
            raise typer.Exit(2) from exc

    async def _run() -> bool:
        try:
            result = await runtime.start_turn(conversation, message)
        finally:
            await runtime.close()
            await transport.close()
        transport.show(result.message_ids)
        if result.outcome is not None and result.outcome.was_fallback:
            transport.console.print(f"[dim](answered by {result.outcome.backend_id} after fallback)[/dim]")
        return result.ok

    if not asyncio.run(_run()):
        raise typer.Exit(1)


@app.command()
def telegram(
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace root"),  # noqa: B008
) -> None:
    """Serve chats over Telegram long polling."""

    settings = _settings(workspace)
    if not settings.telegram_token:
        typer.echo("CONVOY_TELEGRAM_TOKEN is not set", err=True)
        raise typer.Exit(2)
    channel = TelegramChannel(
        TelegramConfig(token=settings.telegram_token, allow_from=settings.telegram_allow_from),
        lambda transport: build_runtime(settings, transport),
    )

    async def _serve() -> None:
        try:
            await channel.start()
        finally:
            await channel.stop()

    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_serve())
    logger.info("telegram.channel.exit")


@app.command()
def providers(
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace root"),  # noqa: B008
) -> None:
    """Show configured providers and whether they can be used."""

    settings = _settings(workspace)
    router, _ = build_router(settings)
    table = Table(title="Providers")
    table.add_column("id")
    table.add_column("label")
    table.add_column("available")
    table.add_column("note")
    for status in router.get_provider_status():
        marker = "default" if status.id == router.default_provider else ""
        table.add_row(
            status.id,
            status.label,
            "yes" if status.available else "no",
            marker if status.available else (status.reason or ""),
        )
    Console().print(table)
