"""Inline buttons of `send_text_with_buttons` steps - callback data and click actions."""

from __future__ import annotations

import hashlib
import logging
import re
import time
from dataclasses import dataclass

from sqlalchemy import case, select

from database.db import db
from database.models import AutomationRun, AutomationStep, Conversation
from helpdesk.services.automation_steps import Button, Group, SendTextWithButtons, StepSpec, parse_step
from helpdesk.services.conversation_service import ConversationService
from helpdesk.services.gateway import MessagingGateway
from helpdesk.services.tag_service import TagService
from helpdesk.utils.storage import public_url
from helpdesk.utils.variables import build_variables, render

logger = logging.getLogger(__name__)

# Telegram accepts at most 64 bytes of callback_data.
CALLBACK_DATA_LIMIT = 64
_HASH_THRESHOLD = 60
CALLBACK_DEDUP_SECONDS = 300

_GROUP_MEMBER_RE = re.compile(r"^(?P<group>.+)-s(?P<index>\d+)$")


def build_callback_data(step_key: str, index: int) -> str:
    data = f"{step_key}:{index}"
    if len(data.encode("utf-8")) > _HASH_THRESHOLD:
        data = f"b{_digest(step_key, index)}_{index}"
    return data[:CALLBACK_DATA_LIMIT]


def _digest(step_key: str, index: int) -> str:
    return hashlib.md5(f"{step_key}_{index}".encode("utf-8")).hexdigest()[:16]


def build_keyboard(step: StepSpec, buttons: tuple[Button, ...]) -> list[list[dict]]:
    """One button per row. Buttons with neither a URL nor an action are left out."""
    rows: list[list[dict]] = []
    for index, button in enumerate(buttons):
        if not button.text:
            continue
        if button.url:
            rows.append([{"text": button.text, "url": button.url}])
        elif button.action:
            rows.append([{"text": button.text, "callback_data": build_callback_data(step.callback_key, index)}])
    return rows


@dataclass(frozen=True)
class CallbackRef:
    index: int
    step_key: str | None = None
    digest: str | None = None


def parse_callback_data(data: str | None) -> CallbackRef | None:
    data = data or ""
    if ":" in data:
        key, _, raw_index = data.rpartition(":")
        if key and raw_index.isdigit():
            return CallbackRef(index=int(raw_index), step_key=key)
        return None
    if data.startswith("b") and "_" in data:
        digest, _, raw_index = data[1:].partition("_")
        if digest and raw_index.isdigit():
            return CallbackRef(index=int(raw_index), digest=digest)
    return None


@dataclass(frozen=True)
class ButtonOutcome:
    handled: bool
    # URL buttons keep the keyboard; any other click removes it.
    hide_buttons: bool


class ButtonService:
    def __init__(
        self,
        *,
        conversations: ConversationService,
        tags: TagService,
        gateway: MessagingGateway,
        public_storage_prefix: str = "/storage",
    ):
        self.conversations = conversations
        self.tags = tags
        self.gateway = gateway
        self.public_storage_prefix = public_storage_prefix
        self._seen_callbacks: dict[str, float] = {}

    def is_duplicate_callback(self, callback_query_id: str | None) -> bool:
        """True when this callback query id was already handled in the last five minutes."""
        if not callback_query_id:
            return False
        now = time.monotonic()
        self._seen_callbacks = {
            k: ts for k, ts in self._seen_callbacks.items() if now - ts < CALLBACK_DEDUP_SECONDS
        }
        if callback_query_id in self._seen_callbacks:
            return True
        self._seen_callbacks[callback_query_id] = now
        return False

    async def find_button(self, data: str, conversation_id: int | None = None) -> Button | None:
        """
        Button referenced by callback data.

        `step_id` is only unique within an automation, so steps of automations
        that already ran in `conversation_id` are preferred.
        """
        ref = parse_callback_data(data)
        if ref is None:
            logger.warning(f"Unknown callback_data format: {data!r}")
            return None

        if ref.step_key is not None:
            step = await self._find_step(ref.step_key, conversation_id)
        else:
            step = await self._find_step_by_digest(ref.digest or "", ref.index, conversation_id)
        if step is None or not isinstance(step.kind, SendTextWithButtons):
            logger.warning(f"No button step for callback_data {data!r}")
            return None

        buttons = step.kind.buttons
        if ref.index >= len(buttons):
            logger.warning(f"Button {ref.index} not found on step {step.step_id}")
            return None
        return buttons[ref.index]

    async def handle_callback(self, conversation_id: int, data: str) -> ButtonOutcome:
        button = await self.find_button(data, conversation_id)
        if button is None:
            return ButtonOutcome(handled=False, hide_buttons=False)
        if button.url:
            return ButtonOutcome(handled=True, hide_buttons=False)
        if not button.action or not button.action_config:
            logger.warning(f"Button {button.text!r} has no action")
            return ButtonOutcome(handled=False, hide_buttons=True)

        conversation = await self.conversations.get_conversation(conversation_id)
        if conversation is None:
            return ButtonOutcome(handled=False, hide_buttons=False)
        await self.execute_action(conversation, button.action, button.action_config)
        return ButtonOutcome(handled=True, hide_buttons=True)

    async def execute_action(self, conversation: Conversation, action: str, config: dict) -> None:
        """
        Run a button action against the conversation.

        Tag changes made here do not fire tag automations.
        """
        destination = conversation.provider_chat_id
        if destination is None:
            logger.warning(f"Conversation {conversation.id} has no telegram_chat_id; button action skipped")
            return

        match action:
            case "send_text":
                text = render(str(config.get("text") or ""), build_variables(conversation))
                if not text:
                    logger.warning(f"send_text button action without text: {config}")
                    return
                result = await self.gateway.send_text(conversation.channel, destination, text)
                if result:
                    await self.conversations.add_outgoing_message(
                        conversation,
                        content=text,
                        provider_message_id=result.message_id,
                        metadata={"sent_by": "button", "telegram_message_id": result.message_id},
                    )
            case "send_photo" | "send_video" | "send_file":
                url = str(config.get("url") or "")
                if not url:
                    logger.warning(f"{action} button action without URL: {config}")
                    return
                send, message_type = {
                    "send_photo": (self.gateway.send_photo, "image"),
                    "send_video": (self.gateway.send_video, "video"),
                    "send_file": (self.gateway.send_document, "file"),
                }[action]
                result = await send(conversation.channel, destination, url, "")
                if result:
                    await self.conversations.add_outgoing_message(
                        conversation,
                        content="",
                        message_type=message_type,
                        attachments=[{"url": public_url(url, self.public_storage_prefix), "type": message_type}],
                        provider_message_id=result.message_id,
                        metadata={"sent_by": "button", "telegram_message_id": result.message_id},
                    )
                else:
                    logger.warning(f"Failed to send {message_type} from button action: {url}")
            case "add_tag" | "remove_tag":
                if conversation.client_id is None:
                    logger.warning(f"Conversation {conversation.id} has no client; {action} skipped")
                    return
                raw_ids = config.get("tag_ids") or ([config["tag_id"]] if config.get("tag_id") else [])
                if action == "add_tag":
                    changed = await self.tags.add_to_client(conversation.client_id, raw_ids)
                    template, system_action = 'System assigned tags to the client: "{}".', "tag_added"
                else:
                    changed = await self.tags.remove_from_client(conversation.client_id, raw_ids)
                    template, system_action = 'System removed tags from the client: "{}".', "tag_removed"
                if changed:
                    names = [t.name for t in changed]
                    await self.conversations.add_system_message(
                        conversation,
                        template.format('", "'.join(names)),
                        system_action=system_action,
                        tag_ids=[int(t.id) for t in changed],
                        tag_names=names,
                    )
            case _:
                logger.warning(f"Unknown button action: {action}")

    async def _find_step(self, step_key: str, conversation_id: int | None) -> StepSpec | None:
        member = _GROUP_MEMBER_RE.match(step_key)
        if member:
            group = await self._load_step(member.group("group"), "group", conversation_id)
            if group is not None and isinstance(group.kind, Group):
                index = int(member.group("index"))
                for nested in group.kind.steps:
                    if nested.callback_key == step_key:
                        return nested
                logger.warning(f"Group {group.step_id} has no nested step {index}")
                return None
        return await self._load_step(step_key, "send_text_with_buttons", conversation_id)

    async def _load_step(self, step_id: str, step_type: str, conversation_id: int | None) -> StepSpec | None:
        async with db.session() as session:
            query = _ranked_steps(conversation_id).where(
                AutomationStep.step_id == step_id, AutomationStep.type == step_type
            )
            result = await session.execute(query.limit(1))
            row = result.scalar_one_or_none()
            return parse_step(row) if row else None

    async def _find_step_by_digest(self, digest: str, index: int, conversation_id: int | None) -> StepSpec | None:
        async with db.session() as session:
            result = await session.execute(
                _ranked_steps(conversation_id).where(AutomationStep.type.in_(("send_text_with_buttons", "group")))
            )
            rows = list(result.scalars().all())

        for row in rows:
            parsed = parse_step(row)
            candidates = list(parsed.kind.steps) if isinstance(parsed.kind, Group) else [parsed]
            for candidate in candidates:
                if not isinstance(candidate.kind, SendTextWithButtons):
                    continue
                if index < len(candidate.kind.buttons) and _digest(candidate.callback_key, index) == digest:
                    return candidate
        return None


def _ranked_steps(conversation_id: int | None):
    """Steps ordered by id, those of automations that ran in the conversation first."""
    query = select(AutomationStep)
    if conversation_id is None:
        return query.order_by(AutomationStep.id)
    ran_here = select(AutomationRun.automation_id).where(AutomationRun.conversation_id == int(conversation_id))
    return query.order_by(case((AutomationStep.automation_id.in_(ran_here), 0), else_=1), AutomationStep.id)
