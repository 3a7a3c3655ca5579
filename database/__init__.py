"""Database package - models and connection management."""
from database.db import Database, db
from database.models import (
    Base,
    Channel,
    Operator,
    Tag,
    Client,
    Conversation,
    Message,
    Automation,
    AutomationStep,
    AutomationRun,
)

__all__ = [
    "Database",
    "db",
    "Base",
    "Channel",
    "Operator",
    "Tag",
    "Client",
    "Conversation",
    "Message",
    "Automation",
    "AutomationStep",
    "AutomationRun",
]
