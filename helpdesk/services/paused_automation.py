"""Paused automations - the single suspended-run slot of each conversation."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from database.db import db
from database.models import Conversation

logger = logging.getLogger(__name__)

SLOT_KEY = "paused_automation"


@dataclass(frozen=True)
class PausedExecution:
    automation_id: int
    step_id: str
    run_id: int
    condition_config: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "automation_id": self.automation_id,
            "step_id": self.step_id,
            "log_id": self.run_id,
            "condition_config": dict(self.condition_config),
        }

    @classmethod
    def from_dict(cls, data) -> "PausedExecution | None":
        if not isinstance(data, dict):
            return None
        try:
            automation_id = int(data["automation_id"])
        except (KeyError, TypeError, ValueError):
            return None
        step_id = str(data.get("step_id") or "")
        if not step_id:
            return None
        run_id = data.get("log_id", data.get("run_id"))
        condition = data.get("condition_config")
        return cls(
            automation_id=automation_id,
            step_id=step_id,
            run_id=int(run_id) if run_id is not None else 0,
            condition_config=condition if isinstance(condition, dict) else {},
        )


class PausedExecutionStore:
    """
    Owner of `conversations.metadata["paused_automation"]`.

    Callers hold `lock_for(conversation_id)` for the whole handling of one
    event, which serializes read-modify-write of the slot within the process.
    """

    def __init__(self):
        self._locks: dict[int, asyncio.Lock] = {}
        self._holders: dict[int, int] = {}

    @asynccontextmanager
    async def lock_for(self, conversation_id: int):
        """Hold the conversation lock. The entry is dropped once no task holds or awaits it."""
        key = int(conversation_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]

    async def get(self, conversation_id: int) -> PausedExecution | None:
        async with db.session() as session:
            conversation = await session.get(Conversation, int(conversation_id))
            if not conversation:
                return None
            return PausedExecution.from_dict((conversation.meta or {}).get(SLOT_KEY))

    async def save(self, conversation_id: int, paused: PausedExecution) -> None:
        """Overwrites whatever suspension the conversation held."""
        async with db.session() as session:
            conversation = await session.get(Conversation, int(conversation_id))
            if not conversation:
                logger.warning(f"Cannot pause automation {paused.automation_id}: conversation {conversation_id} missing")
                return
            meta = dict(conversation.meta or {})
            previous = meta.get(SLOT_KEY)
            if previous:
                logger.info(
                    f"Conversation {conversation_id}: replacing paused automation "
                    f"{previous.get('automation_id')} with {paused.automation_id}"
                )
            meta[SLOT_KEY] = paused.to_dict()
            conversation.meta = meta

    async def take(self, conversation_id: int) -> PausedExecution | None:
        """Read and clear the slot in one transaction."""
        async with db.session() as session:
            conversation = await session.get(Conversation, int(conversation_id))
            if not conversation:
                return None
            meta = dict(conversation.meta or {})
            if SLOT_KEY not in meta:
                return None
            raw = meta.pop(SLOT_KEY)
            conversation.meta = meta
            paused = PausedExecution.from_dict(raw)
            if paused is None:
                logger.warning(f"Conversation {conversation_id}: discarded malformed paused automation {raw!r}")
            return paused
