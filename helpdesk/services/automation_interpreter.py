"""Step interpreter - executes automation steps against a conversation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, assert_never

from database.models import Conversation
from helpdesk.services.automation_conditions import evaluate_condition, load_condition_state
from helpdesk.services.automation_runs import AutomationRunLogger
from helpdesk.services.automation_steps import (
    AddTag,
    AssignOperator,
    CloseConversation,
    Condition,
    Delay,
    Group,
    MAX_DELAY_SECONDS,
    RemoveTag,
    SendMedia,
    SendText,
    SendTextWithButtons,
    StepSpec,
    UnknownStep,
)
from helpdesk.services.automation_triggers import EventKind
from helpdesk.services.button_service import build_keyboard
from helpdesk.services.conversation_service import ConversationService
from helpdesk.services.gateway import MessagingGateway
from helpdesk.services.paused_automation import PausedExecution, PausedExecutionStore
from helpdesk.services.tag_service import TagService
from helpdesk.utils.storage import public_url
from helpdesk.utils.variables import build_variables, render

logger = logging.getLogger(__name__)

# (event kind, conversation id, channel id, changed tag ids)
TagChangeHandler = Callable[[EventKind, int, int, tuple[int, ...]], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


class StepOutcome(str, Enum):
    CONTINUE = "continue"
    SUSPEND = "suspend"


@dataclass(frozen=True)
class ExecutionContext:
    automation_id: int
    run_id: int
    conversation_id: int


class StepInterpreter:
    """
    Walks parsed steps in order and performs their side effects.

    Exceptions propagate to the caller, which marks the run failed. Gateway
    failures and invalid step configuration do not raise.
    """

    def __init__(
        self,
        *,
        conversations: ConversationService,
        tags: TagService,
        gateway: MessagingGateway,
        paused: PausedExecutionStore,
        runs: AutomationRunLogger,
        public_storage_prefix: str = "/storage",
        sleep: Sleep = asyncio.sleep,
        on_tags_changed: TagChangeHandler | None = None,
    ):
        self.conversations = conversations
        self.tags = tags
        self.gateway = gateway
        self.paused = paused
        self.runs = runs
        self.public_storage_prefix = public_storage_prefix
        self.sleep = sleep
        self.on_tags_changed = on_tags_changed

    async def run_steps(self, steps: list[StepSpec], ctx: ExecutionContext) -> StepOutcome:
        for step in steps:
            outcome = await self.execute(step, ctx)
            if outcome is StepOutcome.SUSPEND:
                return StepOutcome.SUSPEND
        return StepOutcome.CONTINUE

    async def execute(self, step: StepSpec, ctx: ExecutionContext, *, owner: StepSpec | None = None) -> StepOutcome:
        """
        Execute one step. `owner` is the enclosing group step for nested steps;
        a suspension inside a group pauses at the group.
        """
        await self.runs.append_step(ctx.run_id, step_id=step.step_id, step_type=step.type)
        logger.info(
            f"Automation {ctx.automation_id} run {ctx.run_id}: step {step.step_id} ({step.type}) "
            f"conversation={ctx.conversation_id}"
        )

        kind = step.kind
        match kind:
            case Group():
                logger.info(f"Group {step.step_id} '{kind.name}': {len(kind.steps)} nested steps")
                for nested in kind.steps:
                    outcome = await self.execute(nested, ctx, owner=owner or step)
                    if outcome is StepOutcome.SUSPEND:
                        return StepOutcome.SUSPEND
            case SendText():
                await self._send_text(step, kind, ctx)
            case SendTextWithButtons():
                await self._send_text_with_buttons(step, kind, ctx)
            case SendMedia():
                await self._send_media(step, kind, ctx)
            case Delay():
                await self._delay(step, kind)
            case Condition():
                if not await self._condition_holds(kind, ctx):
                    await self.paused.save(
                        ctx.conversation_id,
                        PausedExecution(
                            automation_id=ctx.automation_id,
                            step_id=(owner or step).step_id,
                            run_id=ctx.run_id,
                            condition_config=kind.to_config(),
                        ),
                    )
                    logger.info(
                        f"Automation {ctx.automation_id} paused at {(owner or step).step_id} "
                        f"on conversation {ctx.conversation_id} ({kind.condition_type})"
                    )
                    return StepOutcome.SUSPEND
            case AddTag():
                await self._add_tag(step, kind, ctx)
            case RemoveTag():
                await self._remove_tag(step, kind, ctx)
            case AssignOperator():
                await self._assign_operator(step, kind, ctx)
            case CloseConversation():
                await self.conversations.set_status(ctx.conversation_id, "closed")
                logger.info(f"Conversation {ctx.conversation_id} closed by automation {ctx.automation_id}")
            case UnknownStep():
                logger.warning(f"Unknown step type {kind.type!r} at step {step.step_id}; skipped")
            case _:
                assert_never(kind)
        return StepOutcome.CONTINUE

    async def _conversation(self, ctx: ExecutionContext) -> Conversation:
        conversation = await self.conversations.get_conversation(ctx.conversation_id)
        if conversation is None:
            raise LookupError(f"conversation {ctx.conversation_id} no longer exists")
        return conversation

    async def _send_text(self, step: StepSpec, kind: SendText, ctx: ExecutionContext) -> None:
        if not kind.text:
            logger.warning(f"send_text {step.step_id}: empty text")
            return
        conversation = await self._conversation(ctx)
        destination = conversation.provider_chat_id
        if destination is None:
            logger.warning(f"Conversation {conversation.id} has no telegram_chat_id; {step.step_id} skipped")
            return

        text = render(kind.text, build_variables(conversation))
        result = await self.gateway.send_text(conversation.channel, destination, text)
        if not result:
            logger.warning(f"send_text {step.step_id} failed for conversation {conversation.id}")
            return
        await self.conversations.add_outgoing_message(
            conversation,
            content=text,
            provider_message_id=result.message_id,
            metadata={"telegram_message_id": result.message_id},
        )

    async def _send_text_with_buttons(self, step: StepSpec, kind: SendTextWithButtons, ctx: ExecutionContext) -> None:
        if not kind.text and not kind.image_url:
            logger.warning(f"send_text_with_buttons {step.step_id}: neither text nor image")
            return
        conversation = await self._conversation(ctx)
        destination = conversation.provider_chat_id
        if destination is None:
            logger.warning(f"Conversation {conversation.id} has no telegram_chat_id; {step.step_id} skipped")
            return

        text = render(kind.text, build_variables(conversation))
        keyboard = build_keyboard(step, kind.buttons) or None
        if kind.image_url:
            result = await self.gateway.send_photo(conversation.channel, destination, kind.image_url, text, keyboard)
            message_type = "image"
            attachments = [{"url": public_url(kind.image_url, self.public_storage_prefix), "type": "image"}]
        else:
            result = await self.gateway.send_text(conversation.channel, destination, text, keyboard)
            message_type = "text"
            attachments = None
        if not result:
            logger.warning(f"send_text_with_buttons {step.step_id} failed for conversation {conversation.id}")
            return
        await self.conversations.add_outgoing_message(
            conversation,
            content=text,
            message_type=message_type,
            attachments=attachments,
            provider_message_id=result.message_id,
            metadata={
                "telegram_message_id": result.message_id,
                "inline_buttons": [
                    {"text": b.text, "url": b.url, "action": b.action, "action_config": b.action_config}
                    for b in kind.buttons
                ],
            },
        )

    async def _send_media(self, step: StepSpec, kind: SendMedia, ctx: ExecutionContext) -> None:
        if not kind.url:
            logger.warning(f"send_{kind.kind} {step.step_id}: no URL configured")
            return
        conversation = await self._conversation(ctx)
        destination = conversation.provider_chat_id
        if destination is None:
            logger.warning(f"Conversation {conversation.id} has no telegram_chat_id; {step.step_id} skipped")
            return

        caption = render(kind.caption, build_variables(conversation))
        send = {
            "image": self.gateway.send_photo,
            "video": self.gateway.send_video,
            "file": self.gateway.send_document,
        }[kind.kind]
        result = await send(conversation.channel, destination, kind.url, caption)
        if not result:
            logger.warning(f"send_{kind.kind} {step.step_id} failed for conversation {conversation.id}")
            return
        await self.conversations.add_outgoing_message(
            conversation,
            content=caption,
            message_type=kind.kind,
            attachments=[{"url": public_url(kind.url, self.public_storage_prefix), "type": kind.kind}],
            provider_message_id=result.message_id,
            metadata={"telegram_message_id": result.message_id},
        )

    async def _delay(self, step: StepSpec, kind: Delay) -> None:
        if not kind.is_valid:
            logger.info(f"delay {step.step_id}: {kind.seconds}s outside (0, {MAX_DELAY_SECONDS}]; skipped")
            return
        # Holds the event handler (and the conversation lock) for the whole wait.
        logger.warning(f"delay {step.step_id}: blocking event handling for {kind.seconds}s")
        await self.sleep(kind.seconds)

    async def _condition_holds(self, kind: Condition, ctx: ExecutionContext) -> bool:
        conversation = await self._conversation(ctx)
        state = await load_condition_state(
            conversation_id=ctx.conversation_id,
            client_id=conversation.client_id,
            conversations=self.conversations,
            tags=self.tags,
        )
        return evaluate_condition(state, kind.condition_type, kind.condition_value)

    async def _target_tags(self, kind: AddTag | RemoveTag, *, create: bool) -> list[int]:
        """Configured tag ids that still exist, else the tag named by the step."""
        if kind.tag_ids:
            existing = [int(t.id) for t in await self.tags.get_tags(list(kind.tag_ids))]
            if existing:
                return existing
            logger.info(f"Tags {list(kind.tag_ids)} no longer exist; falling back to name {kind.tag_name!r}")
        if kind.tag_name:
            tag = await self.tags.resolve(tag_name=kind.tag_name, create=create)
            if tag is not None:
                return [int(tag.id)]
        return []

    async def _add_tag(self, step: StepSpec, kind: AddTag, ctx: ExecutionContext) -> None:
        conversation = await self._conversation(ctx)
        if conversation.client_id is None:
            logger.warning(f"add_tag {step.step_id}: conversation {conversation.id} has no client")
            return
        tag_ids = await self._target_tags(kind, create=True)
        if not tag_ids:
            logger.warning(f"add_tag {step.step_id}: no tag configured")
            return

        added = await self.tags.add_to_client(conversation.client_id, tag_ids)
        if not added:
            logger.warning(f"add_tag {step.step_id}: tags {tag_ids} not found")
            return
        names = [t.name for t in added]
        await self.conversations.add_system_message(
            conversation,
            'System assigned tags to the client: "{}".'.format('", "'.join(names)),
            system_action="tag_added",
            tag_ids=[int(t.id) for t in added],
            tag_names=names,
        )
        if self.on_tags_changed:
            await self.on_tags_changed(
                EventKind.TAG_ADDED, int(conversation.id), int(conversation.channel_id), tuple(int(t.id) for t in added)
            )

    async def _remove_tag(self, step: StepSpec, kind: RemoveTag, ctx: ExecutionContext) -> None:
        conversation = await self._conversation(ctx)
        if conversation.client_id is None:
            logger.warning(f"remove_tag {step.step_id}: conversation {conversation.id} has no client")
            return
        tag_ids = await self._target_tags(kind, create=False)
        if not tag_ids:
            logger.warning(f"remove_tag {step.step_id}: tag not found")
            return

        removed = await self.tags.remove_from_client(conversation.client_id, tag_ids)
        if not removed:
            logger.warning(f"remove_tag {step.step_id}: tags {tag_ids} not found")
            return
        names = [t.name for t in removed]
        await self.conversations.add_system_message(
            conversation,
            'System removed tags from the client: "{}".'.format('", "'.join(names)),
            system_action="tag_removed",
            tag_ids=[int(t.id) for t in removed],
            tag_names=names,
        )
        if self.on_tags_changed:
            await self.on_tags_changed(
                EventKind.TAG_REMOVED, int(conversation.id), int(conversation.channel_id), tuple(int(t.id) for t in removed)
            )

    async def _assign_operator(self, step: StepSpec, kind: AssignOperator, ctx: ExecutionContext) -> None:
        if not kind.operator_id:
            logger.warning(f"assign_operator {step.step_id}: no operator_id")
            return
        conversation = await self._conversation(ctx)
        name = await self.conversations.assign_operator(ctx.conversation_id, kind.operator_id)
        await self.conversations.add_system_message(
            conversation,
            f"Conversation assigned to {name} by automation.",
            system_action="operator_assigned",
            operator_id=kind.operator_id,
        )
