"""Runtime entry point - one dispatcher serving every active Telegram channel."""
import asyncio
import logging
import os
import sys
import time

from aiogram import Bot, Dispatcher

from database.db import db
from helpdesk.config import Config
from helpdesk.container import ServiceContainer
from helpdesk.handlers.inbox import create_inbox_handlers
from helpdesk.services.gateway import TelegramGateway

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler("helpdesk.log"),
    ],
)
logger = logging.getLogger(__name__)


class HelpdeskBot:
    """
    Help-desk runtime shared by polling mode and the webhook server.

    Each channel row carries its own bot token. The bots come from the
    container's gateway, so outbound automation messages reuse the sessions
    that receive updates.
    """

    def __init__(self, config: Config):
        self.config = config
        self.dispatcher: Dispatcher = None
        self.container: ServiceContainer = None
        self.bots: dict[int, Bot] = {}
        self._running = False
        self._started_at: float | None = None

    async def initialize(self):
        """Connect the database, build services and register the inbox router."""
        logger.info("Initializing help-desk runtime")
        try:
            await db.connect()
            await db.require_schema()

            self.container = await ServiceContainer.create(self.config)
            self.dispatcher = Dispatcher()
            self.dispatcher.include_router(create_inbox_handlers(self.container))

            await self._load_channel_bots()
        except Exception as e:
            logger.error(f"Failed to initialize: {e}", exc_info=True)
            raise
        logger.info(f"Runtime ready: {len(self.bots)} channel bot(s)")

    async def _load_channel_bots(self):
        gateway = self.container.gateway
        if not isinstance(gateway, TelegramGateway):
            return
        self.bots = {}
        for channel in await self.container.conversation_service.list_active_channels():
            bot = gateway.bot_for(channel)
            if bot is None:
                logger.warning(f"Channel {channel.id} ({channel.name}) has no bot token; skipped")
                continue
            self.bots[int(channel.id)] = bot

    async def start(self):
        if self._running:
            logger.warning("Already running")
            return
        self._running = True
        self._started_at = time.monotonic()

        for channel_id, bot in self.bots.items():
            try:
                me = await bot.get_me()
                logger.info(f"Channel {channel_id}: @{me.username} (bot id {me.id})")
            except Exception as e:
                logger.warning(f"Channel {channel_id}: get_me failed: {e}")
        mode = "webhook" if self.config.is_production else "polling"
        logger.info(f"Help-desk runtime started ({mode} mode)")

    async def stop(self):
        if not self._running:
            logger.warning("Not running")
            return
        self._running = False
        try:
            if self.container:
                await self.container.cleanup()
            self.bots = {}
            await db.disconnect()
        except Exception as e:
            logger.error(f"Error stopping: {e}", exc_info=True)
            raise
        logger.info("Help-desk runtime stopped")

    async def run_polling(self):
        """Long-poll every channel bot (local development)."""
        if not self.bots:
            logger.error("No active Telegram channels with a bot token; nothing to poll")
            return

        await self.start()
        try:
            await self.dispatcher.start_polling(
                *self.bots.values(),
                allowed_updates=self.dispatcher.resolve_used_update_types(),
            )
        except Exception as e:
            logger.error(f"Polling error: {e}", exc_info=True)
        finally:
            await self.stop()

    def get_bot(self, channel_id: int) -> Bot | None:
        return self.bots.get(int(channel_id))

    def get_dispatcher(self) -> Dispatcher:
        return self.dispatcher

    def get_container(self) -> ServiceContainer:
        return self.container

    def is_running(self) -> bool:
        return self._running

    def uptime_seconds(self) -> int:
        if self._started_at is None:
            return 0
        return int(time.monotonic() - self._started_at)


async def main():
    try:
        runtime = HelpdeskBot(Config.from_env())
        await runtime.initialize()
        await runtime.run_polling()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Stopped by user")
