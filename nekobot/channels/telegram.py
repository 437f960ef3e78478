"""Telegram channel implementation using python-telegram-bot."""

import asyncio

from loguru import logger
from telegram import Update
from telegram.error import TelegramError
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters

from nekobot.bus.events import Attachment
from nekobot.bus.queue import MessageBus
from nekobot.channels.base import BaseChannel
from nekobot.config.schema import TelegramConfig
from nekobot.errors import DeliveryFailedError

MAX_MESSAGE_CHARS = 4096


def split_message(text: str, limit: int = MAX_MESSAGE_CHARS) -> list[str]:
    """Split on line boundaries so each chunk fits Telegram's message limit."""
    chunks: list[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        if len(current) + len(line) > limit:
            chunks.append(current)
            current = ""
        current += line
    if current:
        chunks.append(current)
    return chunks or [""]


class TelegramChannel(BaseChannel):
    """
    Telegram channel using long polling.

    Simple and reliable - no webhook/public IP needed.
    """

    name = "telegram"

    def __init__(self, config: TelegramConfig, bus: MessageBus):
        super().__init__(config, bus)
        self.config: TelegramConfig = config
        self._app: Application | None = None

    async def start(self) -> None:
        """Start the Telegram bot with long polling."""
        if not self.config.token:
            logger.error("Telegram bot token not configured")
            return

        builder = Application.builder().token(self.config.token)
        if self.config.proxy:
            builder = builder.proxy(self.config.proxy).get_updates_proxy(self.config.proxy)
        self._app = builder.build()

        self._app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self._on_message))
        # Session commands are forwarded as plain text and handled by the gateway.
        self._app.add_handler(CommandHandler(["new", "reset"], self._on_message))
        self._app.add_handler(CommandHandler("start", self._on_start))

        logger.info("Starting Telegram bot (polling mode)...")
        await self._app.initialize()
        await self._app.start()
        bot_info = await self._app.bot.get_me()
        logger.info(f"Telegram bot @{bot_info.username} connected")

        await self._app.updater.start_polling(
            allowed_updates=["message"],
            timeout=self.config.poll_timeout,
            drop_pending_updates=True,
        )
        self._running = True

        while self._running:
            await asyncio.sleep(1)

    async def stop(self) -> None:
        """Stop the Telegram bot."""
        self._running = False
        if self._app:
            logger.info("Stopping Telegram bot...")
            await self._app.updater.stop()
            await self._app.stop()
            await self._app.shutdown()
            self._app = None

    async def deliver(self, recipient: str, text: str) -> None:
        if not self._app:
            raise DeliveryFailedError("Telegram bot is not running")
        try:
            chat_id = int(recipient)
        except ValueError:
            raise DeliveryFailedError(f"Invalid Telegram chat id: {recipient}") from None

        try:
            for chunk in split_message(text):
                await self._app.bot.send_message(chat_id=chat_id, text=chunk)
        except TelegramError as e:
            raise DeliveryFailedError(f"Telegram send failed: {e}") from e

    async def deliver_file(self, recipient: str, attachment: Attachment) -> None:
        if not self._app:
            raise DeliveryFailedError("Telegram bot is not running")
        try:
            chat_id = int(recipient)
        except ValueError:
            raise DeliveryFailedError(f"Invalid Telegram chat id: {recipient}") from None

        kind = attachment.mime_type.split("/", 1)[0]
        bot = self._app.bot
        try:
            with open(attachment.path, "rb") as f:
                if kind == "image" and attachment.mime_type != "image/svg+xml":
                    await bot.send_photo(chat_id=chat_id, photo=f)
                elif kind == "audio":
                    await bot.send_audio(chat_id=chat_id, audio=f)
                elif kind == "video":
                    await bot.send_video(chat_id=chat_id, video=f)
                else:
                    await bot.send_document(chat_id=chat_id, document=f, filename=attachment.filename)
        except OSError as e:
            raise DeliveryFailedError(f"Cannot read {attachment.path}: {e}") from e
        except TelegramError as e:
            raise DeliveryFailedError(f"Telegram file send failed: {e}") from e

    async def _on_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle /start command."""
        if not update.message or not update.effective_user:
            return
        await update.message.reply_text(
            f"👋 Hi {update.effective_user.first_name}! I'm nekobot.\n\n"
            "Send me a message, or /new to start a fresh conversation."
        )

    async def _on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not update.message or not update.effective_user or not update.message.text:
            return
        user = update.effective_user
        # Stable numeric id, username kept for allowlist compatibility
        sender_id = str(user.id)
        if user.username:
            sender_id = f"{sender_id}|{user.username}"

        await self._handle_message(
            sender_id=sender_id,
            chat_id=str(update.message.chat_id),
            content=update.message.text,
            metadata={"message_id": update.message.message_id, "username": user.username},
        )
