"""Service container - wires configuration, the messaging gateway, and domain services."""
import logging
from dataclasses import dataclass

from helpdesk.config import Config
from helpdesk.services.automation_runs import AutomationRunLogger
from helpdesk.services.automation_service import AutomationService
from helpdesk.services.button_service import ButtonService
from helpdesk.services.conversation_service import ConversationService
from helpdesk.services.gateway import MessagingGateway, TelegramGateway
from helpdesk.services.paused_automation import PausedExecutionStore
from helpdesk.services.tag_service import TagService

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Simple dependency container to share services across handlers."""

    config: Config
    gateway: MessagingGateway
    conversation_service: ConversationService
    tag_service: TagService
    run_logger: AutomationRunLogger
    paused_store: PausedExecutionStore
    automation_service: AutomationService
    button_service: ButtonService

    @classmethod
    async def create(cls, config: Config, gateway: MessagingGateway | None = None) -> "ServiceContainer":
        """
        Build the service container with all dependencies.

        Args:
            config: Loaded Config instance
            gateway: Outbound gateway; defaults to the aiogram Telegram gateway

        Returns:
            ServiceContainer with initialized services
        """
        logger.info("Building service container...")

        if gateway is None:
            gateway = TelegramGateway(
                storage_root=config.storage_root,
                public_storage_prefix=config.public_storage_prefix,
            )
        conversation_service = ConversationService()
        tag_service = TagService()
        run_logger = AutomationRunLogger()
        paused_store = PausedExecutionStore()
        automation_service = AutomationService(
            conversations=conversation_service,
            tags=tag_service,
            gateway=gateway,
            runs=run_logger,
            paused=paused_store,
            public_storage_prefix=config.public_storage_prefix,
            tag_trigger_dedup_seconds=config.tag_trigger_dedup_seconds,
        )
        button_service = ButtonService(
            conversations=conversation_service,
            tags=tag_service,
            gateway=gateway,
            public_storage_prefix=config.public_storage_prefix,
        )

        logger.info("Service container ready")

        return cls(
            config=config,
            gateway=gateway,
            conversation_service=conversation_service,
            tag_service=tag_service,
            run_logger=run_logger,
            paused_store=paused_store,
            automation_service=automation_service,
            button_service=button_service,
        )

    async def cleanup(self):
        """Close outbound bot sessions."""
        if isinstance(self.gateway, TelegramGateway):
            await self.gateway.close()
        logger.info("Service container cleanup complete")
