"""Messaging gateway - outbound dispatch boundary used by automations."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramAPIError
from aiogram.types import FSInputFile, InlineKeyboardButton, InlineKeyboardMarkup

from database.models import Channel
from helpdesk.utils.storage import is_remote, local_path

logger = logging.getLogger(__name__)

# Rows of {"text": ..., "url": ...} or {"text": ..., "callback_data": ...}
Buttons = list[list[dict]]


@dataclass(frozen=True)
class GatewayResult:
    message_id: int | None


class MessagingGateway(ABC):
    """
    Send text and media to a conversation's destination on a channel.

    Every method returns a `GatewayResult` on success and `None` on failure;
    delivery failures are never raised to the caller.
    """

    @abstractmethod
    async def send_text(
        self, channel: Channel, destination: int, text: str, buttons: Buttons | None = None
    ) -> GatewayResult | None: ...

    @abstractmethod
    async def send_photo(
        self, channel: Channel, destination: int, media: str, caption: str = "", buttons: Buttons | None = None
    ) -> GatewayResult | None: ...

    @abstractmethod
    async def send_video(
        self, channel: Channel, destination: int, media: str, caption: str = "", buttons: Buttons | None = None
    ) -> GatewayResult | None: ...

    @abstractmethod
    async def send_document(
        self, channel: Channel, destination: int, media: str, caption: str = "", buttons: Buttons | None = None
    ) -> GatewayResult | None: ...


class TelegramGateway(MessagingGateway):
    """
    aiogram-backed gateway: one `Bot` per channel token, created lazily.

    Remote URLs are passed to Telegram as-is; storage-relative paths are
    uploaded from `storage_root`.
    """

    def __init__(self, *, storage_root: str, public_storage_prefix: str = "/storage"):
        self.storage_root = storage_root
        self.public_storage_prefix = public_storage_prefix
        self._bots: dict[str, Bot] = {}

    def bot_for(self, channel: Channel) -> Bot | None:
        token = channel.bot_token
        if not token:
            return None
        bot = self._bots.get(token)
        if bot is None:
            bot = Bot(token=token, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
            self._bots[token] = bot
        return bot

    def bots(self) -> list[Bot]:
        return list(self._bots.values())

    async def close(self) -> None:
        for bot in self._bots.values():
            try:
                await bot.session.close()
            except Exception as e:
                logger.debug(f"Failed to close bot session: {e}")
        self._bots.clear()

    async def send_text(self, channel, destination, text, buttons=None):
        bot = self.bot_for(channel)
        if bot is None:
            logger.warning(f"Channel {channel.id} has no bot token; text not sent")
            return None
        try:
            msg = await bot.send_message(
                chat_id=int(destination),
                text=text,
                reply_markup=_keyboard(buttons),
            )
        except TelegramAPIError as e:
            logger.error(f"Telegram send_message failed: channel={channel.id} chat={destination}: {e}")
            return None
        return GatewayResult(message_id=int(getattr(msg, "message_id", 0) or 0) or None)

    async def send_photo(self, channel, destination, media, caption="", buttons=None):
        return await self._send_media("photo", channel, destination, media, caption, buttons)

    async def send_video(self, channel, destination, media, caption="", buttons=None):
        return await self._send_media("video", channel, destination, media, caption, buttons)

    async def send_document(self, channel, destination, media, caption="", buttons=None):
        return await self._send_media("document", channel, destination, media, caption, buttons)

    async def _send_media(
        self,
        kind: str,
        channel: Channel,
        destination: int,
        media: str,
        caption: str,
        buttons: Buttons | None,
    ) -> GatewayResult | None:
        bot = self.bot_for(channel)
        if bot is None:
            logger.warning(f"Channel {channel.id} has no bot token; {kind} not sent")
            return None

        if is_remote(media):
            payload = media
        else:
            path = local_path(media, self.storage_root, self.public_storage_prefix)
            if not path.is_file():
                logger.error(f"Local {kind} not found: {path}")
                return None
            payload = FSInputFile(path)

        send = {
            "photo": bot.send_photo,
            "video": bot.send_video,
            "document": bot.send_document,
        }[kind]
        try:
            msg = await send(
                int(destination),
                payload,
                caption=caption or None,
                reply_markup=_keyboard(buttons),
            )
        except TelegramAPIError as e:
            logger.error(f"Telegram send_{kind} failed: channel={channel.id} chat={destination}: {e}")
            return None
        return GatewayResult(message_id=int(getattr(msg, "message_id", 0) or 0) or None)


def _keyboard(buttons: Buttons | None) -> InlineKeyboardMarkup | None:
    if not buttons:
        return None
    rows = []
    for row in buttons:
        rows.append([InlineKeyboardButton(**button) for button in row])
    return InlineKeyboardMarkup(inline_keyboard=rows)
