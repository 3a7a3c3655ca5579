"""Handlers package - Telegram update handlers."""
from helpdesk.handlers.inbox import create_inbox_handlers

__all__ = [
    "create_inbox_handlers",
]
