"""Automation service - turns conversation events into automation runs."""

from __future__ import annotations

import asyncio
import logging
import time
from contextvars import ContextVar

from sqlalchemy.orm import selectinload

from database.db import db
from database.models import Automation
from helpdesk.services.automation_conditions import evaluate_condition, load_condition_state
from helpdesk.services.automation_interpreter import ExecutionContext, Sleep, StepInterpreter, StepOutcome
from helpdesk.services.automation_runs import AutomationRunLogger
from helpdesk.services.automation_steps import StepSpec, parse_steps
from helpdesk.services.automation_triggers import AutomationEvent, EventKind, TriggerMatcher
from helpdesk.services.conversation_service import ConversationService, IncomingRecord
from helpdesk.services.gateway import MessagingGateway
from helpdesk.services.paused_automation import PausedExecutionStore
from helpdesk.services.tag_service import TagService

logger = logging.getLogger(__name__)

# Set while a tag-triggered automation runs; its own tag changes do not trigger further tag automations.
_tag_automation_active: ContextVar[bool] = ContextVar("tag_automation_active", default=False)

_TAG_EVENTS = (EventKind.TAG_ADDED, EventKind.TAG_REMOVED)


class AutomationService:
    """
    Entry point of the automation engine.

    Every public event method takes the conversation's lock for the whole
    handling of the event, so runs for one conversation never interleave.
    """

    def __init__(
        self,
        *,
        conversations: ConversationService,
        tags: TagService,
        gateway: MessagingGateway,
        runs: AutomationRunLogger | None = None,
        paused: PausedExecutionStore | None = None,
        matcher: TriggerMatcher | None = None,
        public_storage_prefix: str = "/storage",
        tag_trigger_dedup_seconds: int = 30,
        sleep: Sleep = asyncio.sleep,
    ):
        self.conversations = conversations
        self.tags = tags
        self.runs = runs or AutomationRunLogger()
        self.paused = paused or PausedExecutionStore()
        self.matcher = matcher or TriggerMatcher()
        self.tag_trigger_dedup_seconds = tag_trigger_dedup_seconds
        self.interpreter = StepInterpreter(
            conversations=conversations,
            tags=tags,
            gateway=gateway,
            paused=self.paused,
            runs=self.runs,
            public_storage_prefix=public_storage_prefix,
            sleep=sleep,
            on_tags_changed=self._on_tags_changed,
        )
        self._tag_fired_at: dict[tuple, float] = {}

    async def dispatch(self, event: AutomationEvent) -> list[int]:
        """Run every automation matching the event. Returns the ids of the runs opened."""
        async with self.paused.lock_for(event.conversation_id):
            return await self._dispatch(event)

    async def handle_incoming_message(self, record: IncomingRecord) -> list[int]:
        """
        Full inbound-message path.

        A paused automation is resumed first. Trigger matching is then skipped
        when the channel has automations disabled, or when this is a client's
        first conversation on this channel but they already talk to us elsewhere.
        """
        if record.duplicate:
            return []

        run_ids: list[int] = []
        async with self.paused.lock_for(record.conversation_id):
            resumed = await self._resume(record.conversation_id)
            if resumed is not None:
                run_ids.append(resumed)

            if record.automations_disabled:
                logger.info(f"Automations disabled on channel {record.channel_id}; triggers skipped")
                return run_ids
            if record.is_new_conversation and record.client_has_other_channels:
                logger.info(
                    f"Client {record.client_id} already has conversations on other channels; "
                    f"triggers skipped for conversation {record.conversation_id}"
                )
                return run_ids

            if record.is_new_conversation:
                run_ids += await self._dispatch(
                    AutomationEvent(
                        kind=EventKind.NEW_CONVERSATION,
                        conversation_id=record.conversation_id,
                        channel_id=record.channel_id,
                        message_id=record.message_id,
                        message_text=record.content,
                    )
                )
            run_ids += await self._dispatch(
                AutomationEvent(
                    kind=EventKind.INCOMING_MESSAGE,
                    conversation_id=record.conversation_id,
                    channel_id=record.channel_id,
                    message_id=record.message_id,
                    message_text=record.content,
                )
            )
        return run_ids

    async def resume_paused(self, conversation_id: int) -> int | None:
        async with self.paused.lock_for(conversation_id):
            return await self._resume(conversation_id)

    async def trigger_new_conversation(self, conversation_id: int) -> list[int]:
        return await self._trigger(EventKind.NEW_CONVERSATION, conversation_id)

    async def trigger_tag_added(self, conversation_id: int, tag_ids) -> list[int]:
        return await self._trigger(EventKind.TAG_ADDED, conversation_id, tag_ids=tuple(int(t) for t in tag_ids))

    async def trigger_tag_removed(self, conversation_id: int, tag_ids) -> list[int]:
        return await self._trigger(EventKind.TAG_REMOVED, conversation_id, tag_ids=tuple(int(t) for t in tag_ids))

    async def trigger_conversation_opened(self, conversation_id: int) -> list[int]:
        return await self._trigger(EventKind.CONVERSATION_OPENED, conversation_id)

    async def trigger_conversation_closed(self, conversation_id: int) -> list[int]:
        return await self._trigger(EventKind.CONVERSATION_CLOSED, conversation_id)

    async def execute_automation(
        self,
        automation: Automation,
        conversation_id: int,
        *,
        trigger_data: dict | None = None,
        steps: list[StepSpec] | None = None,
    ) -> int | None:
        """
        Open a run and execute `steps` (all steps of the automation by default).

        An exception fails this run only; its earlier side effects stay.
        """
        conversation = await self.conversations.get_conversation(conversation_id)
        if conversation is None:
            logger.warning(f"Automation {automation.id}: conversation {conversation_id} not found")
            return None

        run_id = await self.runs.open_run(
            automation_id=int(automation.id),
            conversation_id=int(conversation.id),
            client_id=conversation.client_id,
            trigger_data=trigger_data,
        )
        ctx = ExecutionContext(automation_id=int(automation.id), run_id=run_id, conversation_id=int(conversation.id))
        if steps is None:
            steps = parse_steps(list(automation.steps))

        logger.info(
            f"Automation {automation.id} '{automation.name}' run {run_id} started on "
            f"conversation {conversation.id} ({len(steps)} steps)"
        )
        try:
            outcome = await self.interpreter.run_steps(steps, ctx)
        except Exception as e:
            logger.error(f"Automation {automation.id} run {run_id} failed: {e}", exc_info=True)
            await self.runs.fail(run_id, str(e) or e.__class__.__name__)
            return run_id

        await self.runs.complete(run_id)
        if outcome is StepOutcome.SUSPEND:
            logger.info(f"Automation {automation.id} run {run_id} completed, waiting on a condition")
        else:
            logger.info(f"Automation {automation.id} run {run_id} completed")
        return run_id

    async def _trigger(self, kind: EventKind, conversation_id: int, tag_ids: tuple[int, ...] = ()) -> list[int]:
        conversation = await self.conversations.get_conversation(conversation_id)
        if conversation is None:
            logger.warning(f"{kind.value}: conversation {conversation_id} not found")
            return []
        return await self.dispatch(
            AutomationEvent(
                kind=kind,
                conversation_id=int(conversation.id),
                channel_id=int(conversation.channel_id),
                tag_ids=tag_ids,
            )
        )

    async def _dispatch(self, event: AutomationEvent) -> list[int]:
        run_ids: list[int] = []
        for automation in await self.matcher.match(event):
            if event.kind in _TAG_EVENTS:
                if self._recently_fired(int(automation.id), event):
                    logger.info(
                        f"Automation {automation.id} already ran for {event.kind.value} {list(event.tag_ids)} "
                        f"on conversation {event.conversation_id}; skipped"
                    )
                    continue
                token = _tag_automation_active.set(True)
                try:
                    run_id = await self.execute_automation(
                        automation, event.conversation_id, trigger_data=event.trigger_data()
                    )
                finally:
                    _tag_automation_active.reset(token)
            else:
                run_id = await self.execute_automation(
                    automation, event.conversation_id, trigger_data=event.trigger_data()
                )
            if run_id is not None:
                run_ids.append(run_id)
        return run_ids

    async def _on_tags_changed(
        self, kind: EventKind, conversation_id: int, channel_id: int, tag_ids: tuple[int, ...]
    ) -> None:
        # Called from inside a run, the conversation lock is already held.
        if _tag_automation_active.get():
            logger.debug(f"{kind.value} {list(tag_ids)} raised by a tag automation; not chained")
            return
        await self._dispatch(
            AutomationEvent(kind=kind, conversation_id=conversation_id, channel_id=channel_id, tag_ids=tag_ids)
        )

    def _recently_fired(self, automation_id: int, event: AutomationEvent) -> bool:
        if self.tag_trigger_dedup_seconds <= 0:
            return False
        now = time.monotonic()
        window = self.tag_trigger_dedup_seconds
        self._tag_fired_at = {k: ts for k, ts in self._tag_fired_at.items() if now - ts < window}
        key = (automation_id, event.conversation_id, event.kind.value, tuple(sorted(event.tag_ids)))
        if key in self._tag_fired_at:
            return True
        self._tag_fired_at[key] = now
        return False

    async def _resume(self, conversation_id: int) -> int | None:
        # Taken before evaluation: a suspension is looked at exactly once.
        paused = await self.paused.take(conversation_id)
        if paused is None:
            return None

        automation = await self._load_automation(paused.automation_id)
        if automation is None or not automation.is_active:
            logger.info(f"Paused automation {paused.automation_id} is gone or inactive; discarded")
            return None

        conversation = await self.conversations.get_conversation(conversation_id)
        if conversation is None:
            return None
        state = await load_condition_state(
            conversation_id=conversation_id,
            client_id=conversation.client_id,
            conversations=self.conversations,
            tags=self.tags,
        )
        condition = paused.condition_config
        if not evaluate_condition(state, condition.get("condition_type"), condition.get("condition_value")):
            logger.info(
                f"Automation {automation.id} condition {condition.get('condition_type')} still false "
                f"on conversation {conversation_id}; suspension discarded"
            )
            return None

        steps = parse_steps(list(automation.steps))
        paused_step = next((s for s in steps if s.step_id == paused.step_id), None)
        if paused_step is None:
            logger.warning(f"Paused step {paused.step_id} no longer exists in automation {automation.id}")
            return None

        remaining = [s for s in steps if s.order > paused_step.order]
        logger.info(
            f"Resuming automation {automation.id} after {paused_step.step_id} on conversation "
            f"{conversation_id} ({len(remaining)} steps left)"
        )
        return await self.execute_automation(
            automation,
            conversation_id,
            trigger_data={
                "resumed_from_condition": True,
                "paused_step_id": paused.step_id,
                "previous_run_id": paused.run_id,
            },
            steps=remaining,
        )

    async def _load_automation(self, automation_id: int) -> Automation | None:
        async with db.session() as session:
            return await session.get(Automation, int(automation_id), options=[selectinload(Automation.steps)])
