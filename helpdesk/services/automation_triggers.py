"""Trigger matching - which automations fire for a conversation event."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy import or_, select
from sqlalchemy.orm import selectinload

from database.db import db
from database.models import Automation

logger = logging.getLogger(__name__)


class TriggerKind(str, Enum):
    NEW_CONVERSATION = "new_conversation"
    KEYWORD = "keyword"
    NO_RESPONSE = "no_response"
    SCHEDULED = "scheduled"
    TAG_ADDED = "tag_added"
    TAG_REMOVED = "tag_removed"
    INCOMING_MESSAGE = "incoming_message"
    CONVERSATION_OPENED = "conversation_opened"
    CONVERSATION_CLOSED = "conversation_closed"


class EventKind(str, Enum):
    NEW_CONVERSATION = "new_conversation"
    INCOMING_MESSAGE = "incoming_message"
    TAG_ADDED = "tag_added"
    TAG_REMOVED = "tag_removed"
    CONVERSATION_OPENED = "conversation_opened"
    CONVERSATION_CLOSED = "conversation_closed"


# An inbound message is matched against both keyword and incoming_message automations.
_EVENT_TRIGGERS: dict[EventKind, tuple[TriggerKind, ...]] = {
    EventKind.NEW_CONVERSATION: (TriggerKind.NEW_CONVERSATION,),
    EventKind.INCOMING_MESSAGE: (TriggerKind.KEYWORD, TriggerKind.INCOMING_MESSAGE),
    EventKind.TAG_ADDED: (TriggerKind.TAG_ADDED,),
    EventKind.TAG_REMOVED: (TriggerKind.TAG_REMOVED,),
    EventKind.CONVERSATION_OPENED: (TriggerKind.CONVERSATION_OPENED,),
    EventKind.CONVERSATION_CLOSED: (TriggerKind.CONVERSATION_CLOSED,),
}


@dataclass(frozen=True)
class AutomationEvent:
    """A conversation event the engine reacts to."""

    kind: EventKind
    conversation_id: int
    channel_id: int
    message_id: int | None = None
    message_text: str | None = None
    tag_ids: tuple[int, ...] = field(default_factory=tuple)

    def trigger_data(self) -> dict:
        data: dict = {"event": self.kind.value}
        if self.message_id is not None:
            data["message_id"] = self.message_id
        if self.message_text is not None:
            data["message_content"] = self.message_text
        if self.tag_ids:
            data["tag_ids"] = list(self.tag_ids)
        return data


def parse_keywords(raw) -> list[str]:
    """
    Lower-cased trimmed keywords from a comma-separated string.

    A list is accepted too (the flow editor has stored both shapes).
    """
    if isinstance(raw, (list, tuple)):
        parts = [str(p) for p in raw]
    else:
        parts = str(raw or "").split(",")
    return [p.strip().lower() for p in parts if p.strip()]


def keyword_matches(trigger_config: dict | None, text: str | None) -> bool:
    keywords = parse_keywords((trigger_config or {}).get("keywords"))
    if not keywords:
        return False
    haystack = (text or "").lower()
    return any(k in haystack for k in keywords)


def tag_trigger_matches(trigger_config: dict | None, tag_ids) -> bool:
    """Without a configured `tag_id` every tag change matches."""
    wanted = (trigger_config or {}).get("tag_id")
    if wanted in (None, ""):
        return True
    try:
        wanted = int(wanted)
    except (TypeError, ValueError):
        return False
    return wanted in {int(t) for t in tag_ids or ()}


class TriggerMatcher:
    async def candidates(self, trigger: TriggerKind, channel_id: int) -> list[Automation]:
        """Active automations with this trigger scoped to the channel (or to any channel)."""
        async with db.session() as session:
            result = await session.execute(
                select(Automation)
                .options(selectinload(Automation.steps))
                .where(
                    Automation.is_active.is_(True),
                    Automation.trigger == trigger.value,
                    or_(Automation.channel_id.is_(None), Automation.channel_id == int(channel_id)),
                )
                .order_by(Automation.id)
            )
            return list(result.scalars().all())

    async def match(self, event: AutomationEvent) -> list[Automation]:
        """
        Automations to run for an event, ascending by id, each at most once.

        For an inbound message, keyword automations come before incoming_message
        automations.
        """
        matched: list[Automation] = []
        seen: set[int] = set()
        for trigger in _EVENT_TRIGGERS[event.kind]:
            for automation in await self.candidates(trigger, event.channel_id):
                if int(automation.id) in seen:
                    continue
                if trigger is TriggerKind.KEYWORD and not keyword_matches(
                    automation.trigger_config, event.message_text
                ):
                    continue
                if trigger in (TriggerKind.TAG_ADDED, TriggerKind.TAG_REMOVED) and not tag_trigger_matches(
                    automation.trigger_config, event.tag_ids
                ):
                    continue
                seen.add(int(automation.id))
                matched.append(automation)

        if matched:
            logger.debug(
                f"Event {event.kind.value} conversation={event.conversation_id} matched "
                f"automations {[int(a.id) for a in matched]}"
            )
        return matched
