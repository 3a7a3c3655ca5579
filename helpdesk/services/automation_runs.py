"""Run logger - append-only record of automation executions."""

from __future__ import annotations

import logging

from sqlalchemy import select

from database.db import db
from database.models import AutomationRun
from helpdesk.utils.datetime_utils import isoformat, utcnow

logger = logging.getLogger(__name__)

RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"


class AutomationRunLogger:
    async def open_run(
        self,
        *,
        automation_id: int,
        conversation_id: int,
        client_id: int | None,
        trigger_data: dict | None = None,
    ) -> int:
        async with db.session() as session:
            run = AutomationRun(
                automation_id=int(automation_id),
                conversation_id=int(conversation_id),
                client_id=int(client_id) if client_id is not None else None,
                status=RUN_RUNNING,
                trigger_data=trigger_data or {},
                steps_executed=[],
                started_at=utcnow(),
            )
            session.add(run)
            await session.flush()
            return int(run.id)

    async def append_step(self, run_id: int, *, step_id: str, step_type: str) -> None:
        """Add a trace entry; called before the step executes."""
        async with db.session() as session:
            run = await session.get(AutomationRun, int(run_id))
            if not run:
                logger.warning(f"append_step: run {run_id} not found")
                return
            if run.status != RUN_RUNNING:
                logger.warning(f"append_step: run {run_id} already {run.status}")
                return
            # Reassign so the JSON column is flagged dirty.
            run.steps_executed = [
                *(run.steps_executed or []),
                {"step_id": step_id, "type": step_type, "started_at": isoformat(utcnow())},
            ]

    async def complete(self, run_id: int) -> None:
        await self._finish(run_id, RUN_COMPLETED)

    async def fail(self, run_id: int, error: str) -> None:
        await self._finish(run_id, RUN_FAILED, error=error)

    async def _finish(self, run_id: int, status: str, error: str | None = None) -> None:
        async with db.session() as session:
            run = await session.get(AutomationRun, int(run_id))
            if not run:
                logger.warning(f"Run {run_id} not found when marking {status}")
                return
            if run.status != RUN_RUNNING:
                return
            run.status = status
            run.error = error
            run.completed_at = utcnow()

    async def get_run(self, run_id: int) -> dict | None:
        async with db.session() as session:
            run = await session.get(AutomationRun, int(run_id))
            return _serialize(run) if run else None

    async def list_runs(self, automation_id: int, *, limit: int = 50, offset: int = 0) -> list[dict]:
        """Most recent first."""
        limit = max(1, min(int(limit or 50), 200))
        offset = max(0, int(offset or 0))
        async with db.session() as session:
            result = await session.execute(
                select(AutomationRun)
                .where(AutomationRun.automation_id == int(automation_id))
                .order_by(AutomationRun.started_at.desc(), AutomationRun.id.desc())
                .offset(offset)
                .limit(limit)
            )
            return [_serialize(r) for r in result.scalars().all()]

    async def list_conversation_runs(self, conversation_id: int) -> list[dict]:
        async with db.session() as session:
            result = await session.execute(
                select(AutomationRun)
                .where(AutomationRun.conversation_id == int(conversation_id))
                .order_by(AutomationRun.id)
            )
            return [_serialize(r) for r in result.scalars().all()]


def _serialize(run: AutomationRun) -> dict:
    return {
        "id": int(run.id),
        "automation_id": int(run.automation_id),
        "conversation_id": int(run.conversation_id),
        "client_id": int(run.client_id) if run.client_id is not None else None,
        "status": run.status,
        "trigger_data": run.trigger_data or {},
        "steps_executed": list(run.steps_executed or []),
        "error": run.error,
        "started_at": isoformat(run.started_at),
        "completed_at": isoformat(run.completed_at),
    }
