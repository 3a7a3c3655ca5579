"""Shared fixtures: a throwaway SQLite database, a recording gateway and the services under test."""

from __future__ import annotations

import os

# webhook_server reads configuration at import time.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest

from database.db import db
from helpdesk.services.automation_service import AutomationService
from helpdesk.services.button_service import ButtonService
from helpdesk.services.conversation_service import ConversationService
from helpdesk.services.tag_service import TagService
from tests.factories import RecordingGateway, Sleeper


@pytest.fixture
async def database(tmp_path):
    db.database_url = f"sqlite+aiosqlite:///{tmp_path}/helpdesk.db"
    await db.connect()
    await db.create_tables()
    yield db
    await db.disconnect()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def sleeper():
    return Sleeper()


@pytest.fixture
def conversations():
    return ConversationService()


@pytest.fixture
def tags():
    return TagService()


@pytest.fixture
def engine(database, gateway, sleeper, conversations, tags):
    return AutomationService(
        conversations=conversations,
        tags=tags,
        gateway=gateway,
        sleep=sleeper,
        tag_trigger_dedup_seconds=30,
    )


@pytest.fixture
def buttons(database, gateway, conversations, tags):
    return ButtonService(conversations=conversations, tags=tags, gateway=gateway)
