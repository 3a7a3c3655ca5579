"""Test doubles and row factories shared by the test modules."""

from __future__ import annotations

from database.db import db
from database.models import Automation, AutomationStep, Channel, Client, Conversation, Message, Operator, Tag
from helpdesk.services.gateway import GatewayResult, MessagingGateway
from helpdesk.services.tag_service import TagService
from helpdesk.utils.datetime_utils import utcnow


class RecordingGateway(MessagingGateway):
    """Gateway double: records every call, returns increasing message ids, or fails on demand."""

    def __init__(self):
        self.calls: list[dict] = []
        self.fail = False
        self._next_id = 1000

    async def _record(self, method, channel, destination, **payload):
        self.calls.append({"method": method, "channel_id": channel.id, "destination": destination, **payload})
        if self.fail:
            return None
        self._next_id += 1
        return GatewayResult(message_id=self._next_id)

    async def send_text(self, channel, destination, text, buttons=None):
        return await self._record("send_text", channel, destination, text=text, buttons=buttons)

    async def send_photo(self, channel, destination, media, caption="", buttons=None):
        return await self._record("send_photo", channel, destination, media=media, caption=caption, buttons=buttons)

    async def send_video(self, channel, destination, media, caption="", buttons=None):
        return await self._record("send_video", channel, destination, media=media, caption=caption, buttons=buttons)

    async def send_document(self, channel, destination, media, caption="", buttons=None):
        return await self._record("send_document", channel, destination, media=media, caption=caption, buttons=buttons)

    def texts(self) -> list[str]:
        return [c["text"] for c in self.calls if c["method"] == "send_text"]


class Sleeper:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------


async def create_channel(name="Support bot", *, settings=None, token="123:abc") -> Channel:
    async with db.session() as session:
        channel = Channel(name=name, type="telegram", credentials={"bot_token": token}, settings=settings or {})
        session.add(channel)
        await session.flush()
        return channel


async def create_conversation(
    channel: Channel,
    *,
    client_name="Anna",
    telegram_id=555,
    phone=None,
    email=None,
    with_chat_id=True,
) -> Conversation:
    async with db.session() as session:
        client = Client(external_id=f"tg_{telegram_id}", name=client_name, phone=phone, email=email, meta={})
        session.add(client)
        await session.flush()
        conversation = Conversation(
            channel_id=channel.id,
            client_id=client.id,
            status="new",
            meta={"telegram_chat_id": telegram_id} if with_chat_id else {},
            last_message_at=utcnow(),
        )
        session.add(conversation)
        await session.flush()
        return conversation


async def create_tag(name: str, tag_id: int | None = None) -> Tag:
    async with db.session() as session:
        tag = Tag(id=tag_id, name=name, color="#000000") if tag_id else Tag(name=name, color="#000000")
        session.add(tag)
        await session.flush()
        return tag


async def create_operator(name: str) -> Operator:
    async with db.session() as session:
        operator = Operator(name=name)
        session.add(operator)
        await session.flush()
        return operator


async def create_automation(
    trigger: str,
    steps: list[tuple[str, dict]],
    *,
    name="Flow",
    trigger_config=None,
    channel_id=None,
    is_active=True,
    orders: list[int] | None = None,
) -> Automation:
    """`steps` are (type, config) pairs; step ids are `s1`, `s2`, ... in list order."""
    async with db.session() as session:
        automation = Automation(
            name=name,
            trigger=trigger,
            trigger_config=trigger_config or {},
            channel_id=channel_id,
            is_active=is_active,
        )
        session.add(automation)
        await session.flush()
        for index, (step_type, config) in enumerate(steps):
            session.add(
                AutomationStep(
                    automation_id=automation.id,
                    step_id=f"s{index + 1}",
                    type=step_type,
                    config=config,
                    order=orders[index] if orders else index,
                )
            )
        return automation


async def add_incoming(conversation: Conversation, content: str) -> Message:
    async with db.session() as session:
        message = Message(
            conversation_id=conversation.id,
            channel_id=conversation.channel_id,
            client_id=conversation.client_id,
            direction="incoming",
            type="text",
            content=content,
            status="received",
            created_at=utcnow(),
        )
        session.add(message)
        await session.flush()
        return message


async def attach_tag(client_id: int, tag_id: int) -> None:
    await TagService().add_to_client(client_id, [tag_id])
