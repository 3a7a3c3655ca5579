"""Conversation service - clients, conversations and their message history."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import selectinload

from database.db import db
from database.models import Channel, Client, Conversation, Message, Operator
from helpdesk.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IncomingRecord:
    """Outcome of storing one inbound provider message."""

    conversation_id: int
    message_id: int
    client_id: int
    channel_id: int
    content: str
    is_new_conversation: bool
    client_has_other_channels: bool
    automations_disabled: bool
    duplicate: bool = False


class ConversationService:
    async def get_channel(self, channel_id: int) -> Channel | None:
        async with db.session() as session:
            return await session.get(Channel, int(channel_id))

    async def list_active_channels(self, channel_type: str = "telegram") -> list[Channel]:
        async with db.session() as session:
            result = await session.execute(
                select(Channel)
                .where(Channel.is_active.is_(True), Channel.type == channel_type)
                .order_by(Channel.id)
            )
            return list(result.scalars().all())

    async def get_channel_by_bot_token(self, token: str) -> Channel | None:
        if not token:
            return None
        for channel in await self.list_active_channels():
            if channel.bot_token == token:
                return channel
        return None

    async def get_conversation(self, conversation_id: int) -> Conversation | None:
        """Conversation with client (and client tags) and channel loaded."""
        async with db.session() as session:
            return await session.get(
                Conversation,
                int(conversation_id),
                options=[
                    selectinload(Conversation.client).selectinload(Client.tags),
                    selectinload(Conversation.channel),
                ],
                populate_existing=True,
            )

    async def find_conversation(self, *, channel_id: int, external_user_id: int) -> Conversation | None:
        """Conversation on a channel with the client behind a Telegram user id."""
        async with db.session() as session:
            result = await session.execute(
                select(Conversation)
                .join(Client, Conversation.client_id == Client.id)
                .where(
                    Conversation.channel_id == int(channel_id),
                    Client.external_id == f"tg_{int(external_user_id)}",
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def record_incoming(
        self,
        *,
        channel_id: int,
        external_user_id: int,
        chat_id: int,
        name: str = "",
        username: str | None = None,
        language_code: str | None = None,
        content: str = "",
        message_type: str = "text",
        attachments: list[dict] | None = None,
        provider_message_id: int | None = None,
    ) -> IncomingRecord:
        """
        Store an inbound message, creating the client and conversation on first contact.

        A message already stored under the same provider id is not stored twice
        (`duplicate=True` in the result).
        """
        now = utcnow()
        name = (name or "").strip()

        async with db.session() as session:
            channel = await session.get(Channel, int(channel_id))
            if not channel:
                raise ValueError(f"channel {channel_id} not found")

            external_id = f"tg_{int(external_user_id)}"
            result = await session.execute(select(Client).where(Client.external_id == external_id))
            client = result.scalar_one_or_none()
            client_was_new = client is None
            if client is None:
                client = Client(
                    external_id=external_id,
                    name=name or None,
                    meta={
                        "telegram_id": int(external_user_id),
                        "telegram_username": username,
                        "telegram_language": language_code,
                    },
                    created_at=now,
                )
                session.add(client)
                await session.flush()
            elif name and client.name != name:
                client.name = name

            # Decided before this channel's conversation exists.
            client_has_other_channels = False
            if not client_was_new:
                other = await session.execute(
                    select(Conversation.id)
                    .where(Conversation.client_id == client.id, Conversation.channel_id != channel.id)
                    .limit(1)
                )
                client_has_other_channels = other.scalar_one_or_none() is not None

            result = await session.execute(
                select(Conversation)
                .where(Conversation.channel_id == channel.id, Conversation.client_id == client.id)
                .order_by(Conversation.id)
                .limit(1)
            )
            conversation = result.scalar_one_or_none()
            is_new = conversation is None
            if conversation is None:
                conversation = Conversation(
                    channel_id=channel.id,
                    client_id=client.id,
                    status="new",
                    meta={"telegram_chat_id": int(chat_id)},
                    unread_count=0,
                    last_message_at=now,
                    created_at=now,
                )
                session.add(conversation)
                await session.flush()

            meta = dict(conversation.meta or {})
            if "telegram_chat_id" not in meta:
                meta["telegram_chat_id"] = int(chat_id)
                conversation.meta = meta

            conversation.last_message_at = now
            if conversation.status == "resolved":
                conversation.status = "open"

            if provider_message_id is not None:
                existing = await session.execute(
                    select(Message.id)
                    .where(
                        Message.conversation_id == conversation.id,
                        Message.direction == "incoming",
                        Message.provider_message_id == int(provider_message_id),
                    )
                    .limit(1)
                )
                existing_id = existing.scalar_one_or_none()
                if existing_id is not None:
                    return IncomingRecord(
                        conversation_id=int(conversation.id),
                        message_id=int(existing_id),
                        client_id=int(client.id),
                        channel_id=int(channel.id),
                        content=content or "",
                        is_new_conversation=False,
                        client_has_other_channels=client_has_other_channels,
                        automations_disabled=channel.automations_disabled,
                        duplicate=True,
                    )

            message = Message(
                conversation_id=conversation.id,
                channel_id=channel.id,
                client_id=client.id,
                direction="incoming",
                type=message_type,
                content=content or "",
                status="received",
                attachments=attachments or None,
                provider_message_id=int(provider_message_id) if provider_message_id is not None else None,
                meta={"telegram_chat_id": int(chat_id)},
                created_at=now,
            )
            session.add(message)
            conversation.unread_count = int(conversation.unread_count or 0) + 1
            await session.flush()

            logger.info(
                f"Incoming message stored: channel={channel.id} conversation={conversation.id} "
                f"client={client.id} new_conversation={is_new}"
            )
            return IncomingRecord(
                conversation_id=int(conversation.id),
                message_id=int(message.id),
                client_id=int(client.id),
                channel_id=int(channel.id),
                content=content or "",
                is_new_conversation=is_new,
                client_has_other_channels=client_has_other_channels,
                automations_disabled=channel.automations_disabled,
            )

    async def mark_edited(self, *, conversation_id: int, provider_message_id: int, content: str) -> bool:
        async with db.session() as session:
            result = await session.execute(
                select(Message).where(
                    Message.conversation_id == int(conversation_id),
                    Message.direction == "incoming",
                    Message.provider_message_id == int(provider_message_id),
                )
            )
            message = result.scalars().first()
            if not message:
                return False
            message.content = content
            message.meta = {**(message.meta or {}), "edited": True}
            return True

    async def add_outgoing_message(
        self,
        conversation: Conversation,
        *,
        content: str,
        message_type: str = "text",
        attachments: list[dict] | None = None,
        provider_message_id: int | None = None,
        metadata: dict | None = None,
    ) -> int:
        """Persist a message sent on behalf of the automation engine."""
        async with db.session() as session:
            message = Message(
                conversation_id=int(conversation.id),
                channel_id=int(conversation.channel_id),
                client_id=None,
                operator_id=None,
                direction="outgoing",
                type=message_type,
                content=content,
                status="sent",
                attachments=attachments,
                provider_message_id=provider_message_id,
                meta={"sent_by": "automation", **(metadata or {})},
                created_at=utcnow(),
            )
            session.add(message)
            await session.flush()
            return int(message.id)

    async def add_system_message(self, conversation: Conversation, content: str, *, system_action: str, **details) -> int:
        """
        Record an automation action in the conversation history.

        Operators see these in the timeline; they are never sent to the client.
        """
        return await self.add_outgoing_message(
            conversation,
            content=content,
            metadata={"system_action": system_action, **details},
        )

    async def assign_operator(self, conversation_id: int, operator_id: int) -> str:
        """Assign and force the conversation open. Returns the operator display name."""
        async with db.session() as session:
            conversation = await session.get(Conversation, int(conversation_id))
            if not conversation:
                raise ValueError(f"conversation {conversation_id} not found")
            operator = await session.get(Operator, int(operator_id))
            conversation.operator_id = int(operator_id) if operator else conversation.operator_id
            conversation.status = "open"
            name = operator.name if operator else f"ID: {operator_id}"
            logger.info(f"Operator {operator_id} assigned to conversation {conversation_id}")
            return name

    async def set_status(self, conversation_id: int, status: str) -> str | None:
        """Set status; returns the previous status (None if the conversation is missing)."""
        async with db.session() as session:
            conversation = await session.get(Conversation, int(conversation_id))
            if not conversation:
                return None
            previous = conversation.status
            conversation.status = status
            return previous

    async def latest_incoming_text(self, conversation_id: int) -> str | None:
        async with db.session() as session:
            result = await session.execute(
                select(Message.content)
                .where(Message.conversation_id == int(conversation_id), Message.direction == "incoming")
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(1)
            )
            row = result.first()
            if row is None:
                return None
            return row[0] or ""

    async def count_client_conversations(self, client_id: int) -> int:
        async with db.session() as session:
            result = await session.execute(
                select(func.count()).select_from(Conversation).where(Conversation.client_id == int(client_id))
            )
            return int(result.scalar() or 0)

    async def get_messages(self, conversation_id: int, limit: int = 50) -> list[Message]:
        limit = max(1, min(int(limit or 50), 200))
        async with db.session() as session:
            result = await session.execute(
                select(Message)
                .where(Message.conversation_id == int(conversation_id))
                .order_by(Message.created_at.asc(), Message.id.asc())
                .limit(limit)
            )
            return list(result.scalars().all())
