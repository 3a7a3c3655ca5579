"""Condition evaluation for automation condition steps."""

from __future__ import annotations

from dataclasses import dataclass, field

from helpdesk.services.conversation_service import ConversationService
from helpdesk.services.tag_service import TagService


@dataclass(frozen=True)
class ConditionState:
    """Snapshot of the conversation/client facts a condition can look at."""

    client_tag_ids: frozenset[int] = field(default_factory=frozenset)
    latest_incoming_text: str | None = None
    client_conversation_count: int = 0


def evaluate_condition(state: ConditionState, condition_type: str | None, condition_value) -> bool:
    match condition_type:
        case "has_tag":
            try:
                tag_id = int(condition_value)
            except (TypeError, ValueError):
                return False
            return tag_id in state.client_tag_ids
        case "message_contains":
            needle = str(condition_value or "").lower()
            if not needle or state.latest_incoming_text is None:
                return False
            return needle in state.latest_incoming_text.lower()
        case "any_message":
            return True
        case "is_new_client":
            return state.client_conversation_count == 1
        case _:
            return False


async def load_condition_state(
    *,
    conversation_id: int,
    client_id: int | None,
    conversations: ConversationService,
    tags: TagService,
) -> ConditionState:
    """Read current state from the database; a conversation without a client has no tags."""
    if client_id is None:
        return ConditionState(
            latest_incoming_text=await conversations.latest_incoming_text(conversation_id),
        )
    return ConditionState(
        client_tag_ids=frozenset(await tags.client_tag_ids(client_id)),
        latest_incoming_text=await conversations.latest_incoming_text(conversation_id),
        client_conversation_count=await conversations.count_client_conversations(client_id),
    )
