"""Telegram transport and long-polling channel."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from loguru import logger
from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.error import BadRequest, TelegramError
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, ContextTypes, MessageHandler, filters
from telegramify_markdown import markdownify as md

from convoy.app.runtime import TurnManager
from convoy.errors import BackendUnavailableError
from convoy.transport import Button, ChatTransport

HELP_TEXT = (
    "Commands:\n"
    "/start - show startup message\n"
    "/help - show this help\n"
    "/provider [name] - show providers or switch this chat to one\n"
    "/status - show the current turn and provider\n"
    "/cancel - stop the running turn\n"
    "/new - start a fresh session\n"
    "/dev <question> - ask in developer mode\n\n"
    "All plain text is routed to the active provider."
)


def _keyboard(buttons: Sequence[Button] | None) -> InlineKeyboardMarkup | None:
    if not buttons:
        return None
    return InlineKeyboardMarkup([[InlineKeyboardButton(b.text, callback_data=b.payload) for b in buttons]])


class TelegramTransport:
    """ChatTransport over a python-telegram-bot Bot."""

    def __init__(self, bot: Any) -> None:
        self._bot = bot

    async def send_message(
        self,
        conversation_id: str,
        text: str,
        *,
        buttons: Sequence[Button] | None = None,
    ) -> int:
        chat_id = int(conversation_id)
        markup = _keyboard(buttons)
        try:
            message = await self._bot.send_message(
                chat_id=chat_id,
                text=md(text),
                parse_mode="MarkdownV2",
                reply_markup=markup,
            )
        except BadRequest as exc:
            logger.warning("telegram.transport.markdown_fallback chat_id={} error={}", chat_id, exc)
            message = await self._bot.send_message(chat_id=chat_id, text=text, reply_markup=markup)
        return int(message.message_id)

    async def edit_message(self, conversation_id: str, message_id: int, text: str) -> bool:
        chat_id = int(conversation_id)
        try:
            await self._bot.edit_message_text(
                chat_id=chat_id,
                message_id=message_id,
                text=md(text),
                parse_mode="MarkdownV2",
            )
        except BadRequest as exc:
            if "not modified" in str(exc).lower():
                return True
            try:
                await self._bot.edit_message_text(chat_id=chat_id, message_id=message_id, text=text)
            except TelegramError as retry_exc:
                if "not modified" in str(retry_exc).lower():
                    return True
                logger.warning("telegram.transport.edit_failed chat_id={} error={}", chat_id, retry_exc)
                return False
        except TelegramError as exc:
            logger.warning("telegram.transport.edit_failed chat_id={} error={}", chat_id, exc)
            return False
        return True

    async def delete_message(self, conversation_id: str, message_id: int) -> bool:
        try:
            await self._bot.delete_message(chat_id=int(conversation_id), message_id=message_id)
        except TelegramError as exc:
            logger.debug("telegram.transport.delete_failed chat_id={} error={}", conversation_id, exc)
            return False
        return True

    async def answer_callback(self, callback_id: str, text: str) -> None:
        await self._bot.answer_callback_query(callback_query_id=callback_id, text=text)


@dataclass(frozen=True)
class TelegramConfig:
    """Telegram adapter config."""

    token: str
    allow_from: set[str]


class TelegramChannel:
    """Telegram adapter using long polling mode."""

    name = "telegram"

    def __init__(self, config: TelegramConfig, runtime_factory: Callable[[ChatTransport], TurnManager]) -> None:
        self._config = config
        self._runtime_factory = runtime_factory
        self._runtime: TurnManager | None = None
        self._app: Application | None = None
        self._running = False
        self._typing_tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def runtime(self) -> TurnManager:
        if self._runtime is None:
            raise RuntimeError("telegram channel is not started")
        return self._runtime

    async def start(self) -> None:
        if not self._config.token:
            raise RuntimeError("telegram token is empty")
        logger.info("telegram.channel.start allow_from_count={}", len(self._config.allow_from))
        self._running = True
        self._app = Application.builder().token(self._config.token).build()
        self._runtime = self._runtime_factory(TelegramTransport(self._app.bot))
        for command, handler in (
            ("start", self._on_start),
            ("help", self._on_help),
            ("provider", self._on_provider),
            ("status", self._on_status),
            ("cancel", self._on_cancel),
            ("new", self._on_new),
            ("dev", self._on_dev),
        ):
            self._app.add_handler(CommandHandler(command, handler, block=False))
        self._app.add_handler(CallbackQueryHandler(self._on_callback, block=False))
        self._app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self._on_text, block=False))
        await self._app.initialize()
        await self._app.start()
        self._runtime.start_sweeper()
        updater = self._app.updater
        if updater is None:
            return
        await updater.start_polling(drop_pending_updates=True, allowed_updates=["message", "callback_query"])
        logger.info("telegram.channel.polling")
        while self._running:
            await asyncio.sleep(0.5)

    async def stop(self) -> None:
        self._running = False
        for task in self._typing_tasks.values():
            task.cancel()
        self._typing_tasks.clear()
        if self._runtime is not None:
            await self._runtime.close()
        if self._app is None:
            return
        updater = self._app.updater
        if updater is not None:
            await updater.stop()
        await self._app.stop()
        await self._app.shutdown()
        self._app = None
        logger.info("telegram.channel.stopped")

    def _allowed(self, update: Update) -> bool:
        user = update.effective_user
        if user is None:
            return False
        if not self._config.allow_from:
            return True
        sender_tokens = {str(user.id)}
        if user.username:
            sender_tokens.add(user.username)
        return not sender_tokens.isdisjoint(self._config.allow_from)

    async def _guard(self, update: Update) -> bool:
        if update.message is None:
            return False
        if not self._allowed(update):
            await update.message.reply_text("Access denied.")
            return False
        return True

    async def _on_start(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._guard(update):
            return
        await update.message.reply_text("Convoy is online. Send text to start, /help for commands.")

    async def _on_help(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._guard(update):
            return
        await update.message.reply_text(HELP_TEXT)

    async def _on_provider(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._guard(update):
            return
        conversation_id = str(update.message.chat_id)
        args = list(getattr(context, "args", None) or [])
        if not args:
            current = self.runtime.router.get_provider(conversation_id)
            lines = ["Providers:"]
            for status in self.runtime.get_provider_status():
                marker = "👉" if status.id == current else ("✅" if status.available else "⛔")
                line = f"{marker} {status.id} - {status.label}"
                if not status.available and status.reason:
                    line += f" ({status.reason})"
                lines.append(line)
            lines.append("\nUse /provider <name> to switch, /provider default to reset.")
            await update.message.reply_text("\n".join(lines))
            return

        choice = args[0]
        if choice.casefold() == "default":
            self.runtime.clear_provider_override(conversation_id)
            await update.message.reply_text("Provider reset to default.")
            return
        try:
            resolved = self.runtime.set_provider_override(conversation_id, choice)
        except BackendUnavailableError as exc:
            await update.message.reply_text(exc.message)
            return
        await update.message.reply_text(f"Provider set to {self.runtime.router.label(resolved)}.")

    async def _on_status(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._guard(update):
            return
        await update.message.reply_text(self.runtime.render_status(str(update.message.chat_id)))

    async def _on_cancel(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._guard(update):
            return
        cancelled = await self.runtime.cancel_turn(str(update.message.chat_id))
        await update.message.reply_text("🛑 Cancelled." if cancelled else "Nothing to cancel.")

    async def _on_new(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._guard(update):
            return
        self.runtime.reset_conversation(str(update.message.chat_id))
        await update.message.reply_text("🆕 Started a fresh session.")

    async def _on_dev(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._guard(update):
            return
        question = " ".join(getattr(context, "args", None) or []).strip()
        if not question:
            await update.message.reply_text("Usage: /dev <question>")
            return
        chat_id = str(update.message.chat_id)
        self._start_typing(chat_id)
        try:
            result = await self.runtime.start_developer_turn(chat_id, question)
        finally:
            self._stop_typing(chat_id)
        if result.busy:
            await update.message.reply_text(result.text)

    async def _on_text(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._guard(update):
            return
        user = update.effective_user
        chat_id = str(update.message.chat_id)
        text = update.message.text or ""
        logger.info(
            "telegram.channel.inbound chat_id={} sender_id={} username={} content={}",
            chat_id,
            user.id,
            user.username or "",
            text[:100],
        )
        self._start_typing(chat_id)
        try:
            result = await self.runtime.start_turn(chat_id, text)
        finally:
            self._stop_typing(chat_id)
        if result.busy:
            await update.message.reply_text(f"⏳ {result.text}")

    async def _on_callback(self, update: Update, _context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        if query is None:
            return
        if not self._allowed(update):
            await query.answer("Access denied.")
            return
        handled = await self.runtime.handle_callback(query.data or "", query.id)
        logger.info("telegram.channel.callback data={} handled={}", query.data, handled)

    def _start_typing(self, chat_id: str) -> None:
        self._stop_typing(chat_id)
        self._typing_tasks[chat_id] = asyncio.create_task(self._typing_loop(chat_id))

    def _stop_typing(self, chat_id: str) -> None:
        task = self._typing_tasks.pop(chat_id, None)
        if task is not None:
            task.cancel()

    async def _typing_loop(self, chat_id: str) -> None:
        try:
            while self._app is not None:
                await self._app.bot.send_chat_action(chat_id=int(chat_id), action="typing")
                await asyncio.sleep(4)
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("telegram.channel.typing_loop.error chat_id={}", chat_id)
            return
