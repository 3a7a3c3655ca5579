"""Inbox handlers - turn private Telegram updates into help-desk events."""
import logging

from aiogram import Bot, F, Router
from aiogram.exceptions import TelegramAPIError
from aiogram.types import CallbackQuery, Message

from helpdesk.container import ServiceContainer

logger = logging.getLogger(__name__)


def message_payload(message: Message) -> tuple[str, str, list[dict] | None]:
    """(message type, text content, attachments) of an inbound Telegram message."""
    caption = message.caption or ""
    if message.text is not None:
        return "text", message.text, None
    if message.photo:
        return "image", caption, [{"file_id": message.photo[-1].file_id, "type": "image"}]
    if message.video:
        return "video", caption, [{"file_id": message.video.file_id, "type": "video"}]
    if message.document:
        return "file", caption, [
            {"file_id": message.document.file_id, "type": "file", "name": message.document.file_name}
        ]
    if message.voice:
        return "voice", caption, [{"file_id": message.voice.file_id, "type": "voice"}]
    if message.sticker:
        return "sticker", message.sticker.emoji or "", [{"file_id": message.sticker.file_id, "type": "sticker"}]
    return "text", caption, None


def _display_name(user) -> str:
    return " ".join(p for p in (user.first_name, user.last_name) if p).strip()


def create_inbox_handlers(container: ServiceContainer) -> Router:
    """
    Create handlers for client messages, edits, and inline-button clicks.

    The channel of an update is the one whose bot token received it.

    Args:
        container: Service container with all dependencies

    Returns:
        Router with registered handlers
    """
    router = Router()

    async def _channel_for(bot: Bot):
        channel = await container.conversation_service.get_channel_by_bot_token(bot.token)
        if channel is None:
            logger.warning(f"Update for bot {bot.id} does not belong to an active channel; ignored")
        return channel

    @router.message(F.chat.type == "private")
    async def handle_client_message(message: Message, bot: Bot):
        if message.from_user is None or message.from_user.is_bot:
            return
        channel = await _channel_for(bot)
        if channel is None:
            return

        message_type, content, attachments = message_payload(message)
        try:
            record = await container.conversation_service.record_incoming(
                channel_id=int(channel.id),
                external_user_id=int(message.from_user.id),
                chat_id=int(message.chat.id),
                name=_display_name(message.from_user),
                username=message.from_user.username,
                language_code=message.from_user.language_code,
                content=content,
                message_type=message_type,
                attachments=attachments,
                provider_message_id=int(message.message_id),
            )
            if record.duplicate:
                logger.info(f"Duplicate message {message.message_id} in conversation {record.conversation_id}")
                return
            await container.automation_service.handle_incoming_message(record)
        except Exception as e:
            logger.error(f"Failed to handle message {message.message_id} on channel {channel.id}: {e}", exc_info=True)

    @router.edited_message(F.chat.type == "private")
    async def handle_client_edit(message: Message, bot: Bot):
        if message.from_user is None:
            return
        channel = await _channel_for(bot)
        if channel is None:
            return

        try:
            conversation = await container.conversation_service.find_conversation(
                channel_id=int(channel.id), external_user_id=int(message.from_user.id)
            )
            if conversation is None:
                return
            _, content, _ = message_payload(message)
            updated = await container.conversation_service.mark_edited(
                conversation_id=int(conversation.id),
                provider_message_id=int(message.message_id),
                content=content,
            )
            if not updated:
                logger.info(f"Edited message {message.message_id} not found in conversation {conversation.id}")
        except Exception as e:
            logger.error(
                f"Failed to handle edit of message {message.message_id} on channel {channel.id}: {e}", exc_info=True
            )

    @router.callback_query(F.data)
    async def handle_button_click(callback: CallbackQuery, bot: Bot):
        if container.button_service.is_duplicate_callback(callback.id):
            logger.info(f"Callback {callback.id} already processed; skipped")
            await callback.answer()
            return

        channel = await _channel_for(bot)
        if channel is None:
            await callback.answer()
            return

        conversation = await container.conversation_service.find_conversation(
            channel_id=int(channel.id), external_user_id=int(callback.from_user.id)
        )
        if conversation is None:
            logger.warning(f"Button click from {callback.from_user.id} without a conversation on channel {channel.id}")
            await callback.answer()
            return

        try:
            outcome = await container.button_service.handle_callback(int(conversation.id), callback.data)
        except Exception as e:
            logger.error(f"Button callback {callback.data!r} failed: {e}", exc_info=True)
            await callback.answer("Something went wrong")
            return

        await callback.answer()
        if outcome.hide_buttons and isinstance(callback.message, Message):
            try:
                await callback.message.edit_reply_markup(reply_markup=None)
            except TelegramAPIError as e:
                logger.debug(f"Could not hide buttons on message {callback.message.message_id}: {e}")

    return router
