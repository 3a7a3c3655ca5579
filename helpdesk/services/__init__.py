"""Services package - business logic layer."""
from helpdesk.services.automation_runs import AutomationRunLogger
from helpdesk.services.automation_service import AutomationService
from helpdesk.services.automation_triggers import AutomationEvent, EventKind, TriggerKind
from helpdesk.services.button_service import ButtonService
from helpdesk.services.conversation_service import ConversationService, IncomingRecord
from helpdesk.services.gateway import GatewayResult, MessagingGateway, TelegramGateway
from helpdesk.services.paused_automation import PausedExecution, PausedExecutionStore
from helpdesk.services.tag_service import TagService

__all__ = [
    "AutomationRunLogger",
    "AutomationService",
    "AutomationEvent",
    "EventKind",
    "TriggerKind",
    "ButtonService",
    "ConversationService",
    "IncomingRecord",
    "GatewayResult",
    "MessagingGateway",
    "TelegramGateway",
    "PausedExecution",
    "PausedExecutionStore",
    "TagService",
]
