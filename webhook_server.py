"""Webhook server for production deployment - Telegram webhooks plus the run-log API."""
import logging
from contextlib import asynccontextmanager

from aiogram.exceptions import TelegramAPIError
from aiogram.types import Update
from fastapi import FastAPI, HTTPException, Request, Response

from helpdesk.config import Config
from helpdesk.main import HelpdeskBot

# Don't configure logging here - it's configured in helpdesk/main.py
logger = logging.getLogger(__name__)

# Global runtime instance
helpdesk_bot: HelpdeskBot = None
config = Config.from_env()


def _update_kind(update: Update) -> str:
    if getattr(update, "message", None) is not None:
        return "message"
    if getattr(update, "edited_message", None) is not None:
        return "edited_message"
    if getattr(update, "callback_query", None) is not None:
        return "callback_query"
    return "other"


def _log_update_summary(channel_id: int, update: Update) -> None:
    # Metadata only; client message text is not logged.
    kind = _update_kind(update)
    if kind in ("message", "edited_message"):
        msg = update.message or update.edited_message
        logger.info(
            "tg_update=%s channel=%s kind=%s chat=%s ct=%s",
            update.update_id,
            channel_id,
            kind,
            getattr(getattr(msg, "chat", None), "id", None),
            getattr(msg, "content_type", None) or "unknown",
        )
        return
    if kind == "callback_query":
        cb = update.callback_query
        logger.info(
            "tg_update=%s channel=%s kind=callback_query from=%s data=%s",
            update.update_id,
            channel_id,
            getattr(getattr(cb, "from_user", None), "id", None),
            (getattr(cb, "data", None) or "")[:64],
        )
        return
    logger.info("tg_update=%s channel=%s kind=%s", update.update_id, channel_id, kind)


def _get_admin_token_from_request(request: Request) -> str | None:
    # Prefer Authorization: Bearer <token>, fallback to X-Admin-Token header
    auth = request.headers.get("authorization")
    if auth:
        parts = auth.strip().split()
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1]
    token = request.headers.get("x-admin-token")
    return token.strip() if token else None


def _is_admin_request(request: Request) -> bool:
    expected = (config.admin_api_token or "").strip()
    if not expected:
        return False
    provided = _get_admin_token_from_request(request)
    return bool(provided) and provided == expected


def _require_admin(request: Request) -> None:
    if not _is_admin_request(request):
        raise HTTPException(status_code=403, detail="admin token required")


def _require_container():
    if not helpdesk_bot or not helpdesk_bot.get_container():
        raise HTTPException(status_code=503, detail="initializing")
    return helpdesk_bot.get_container()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown."""
    global helpdesk_bot

    logger.info("Starting Webhook Server...")

    try:
        helpdesk_bot = HelpdeskBot(config)
        await helpdesk_bot.initialize()
        await helpdesk_bot.start()

        if not config.webhook_secret:
            logger.warning("WEBHOOK_SECRET not set - webhook requests are NOT validated!")

        allowed_updates = helpdesk_bot.get_dispatcher().resolve_used_update_types()
        for channel_id, bot in helpdesk_bot.bots.items():
            webhook_url = f"{config.webhook_url}{config.webhook_path}/{channel_id}"
            webhook_kwargs = {"url": webhook_url, "allowed_updates": allowed_updates}
            if config.webhook_secret:
                webhook_kwargs["secret_token"] = config.webhook_secret
            try:
                await bot.set_webhook(**webhook_kwargs)
                logger.info(f"Webhook for channel {channel_id} set to: {webhook_url}")
            except TelegramAPIError as e:
                logger.error(f"Failed to set webhook for channel {channel_id}: {e}")

        yield

        logger.info("Shutting down Webhook Server...")
        for channel_id, bot in helpdesk_bot.bots.items():
            try:
                await bot.delete_webhook()
            except TelegramAPIError as e:
                logger.warning(f"Failed to delete webhook for channel {channel_id}: {e}")
        await helpdesk_bot.stop()

    except Exception as e:
        logger.error(f"Failed to start webhook server: {e}", exc_info=True)
        raise


app = FastAPI(
    lifespan=lifespan,
    title="Help-desk Automation Engine",
    description="Telegram inbox with trigger-driven chat-flow automations",
    version="1.0.0"
)


@app.post(config.webhook_path + "/{channel_id}")
async def webhook_handler(channel_id: int, request: Request):
    """
    Handle incoming webhook updates for one channel's bot.

    Security: Validates X-Telegram-Bot-Api-Secret-Token header if WEBHOOK_SECRET is configured.
    """
    if config.webhook_secret:
        secret_header = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
        if secret_header != config.webhook_secret:
            logger.warning("Rejected webhook request: invalid or missing secret token")
            return Response(status_code=401)

    bot = helpdesk_bot.get_bot(channel_id) if helpdesk_bot else None
    if bot is None:
        logger.warning(f"Webhook update for unknown channel {channel_id}")
        return Response(status_code=404)

    try:
        update = Update(**(await request.json()))
        _log_update_summary(channel_id, update)

        try:
            await helpdesk_bot.get_dispatcher().feed_update(bot, update)
        except TelegramAPIError as e:
            # Ack the update so Telegram doesn't retry forever.
            logger.warning("tg_update=%s dropped: %s", update.update_id, e)
            return Response(status_code=200)

        return Response(status_code=200)

    except Exception as e:
        logger.error(f"Error processing webhook update: {e}", exc_info=True)
        return Response(status_code=500)


@app.get("/api/automations/{automation_id}/runs")
async def list_automation_runs(automation_id: int, request: Request, limit: int = 50, offset: int = 0):
    """Run history of an automation, most recent first."""
    _require_admin(request)
    container = _require_container()
    runs = await container.run_logger.list_runs(automation_id, limit=limit, offset=offset)
    return {"automation_id": automation_id, "runs": runs}


@app.get("/api/runs/{run_id}")
async def get_run(run_id: int, request: Request):
    """One run with its step trace."""
    _require_admin(request)
    container = _require_container()
    run = await container.run_logger.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="run not found")
    return run


@app.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.

    Returns the health status of the runtime and its components.
    """
    try:
        running = bool(helpdesk_bot and helpdesk_bot.is_running())
        payload = {"status": "ok", "running": running, "version": "1.0.0"}
        if not running:
            payload["detail"] = "initializing"

        # Only include internal details if an admin token is configured + provided.
        if _is_admin_request(request) and helpdesk_bot and helpdesk_bot.get_container():
            from database.db import db

            payload["database_ok"] = await db.health_check()
            payload["channels"] = len(helpdesk_bot.bots)
            payload["uptime_seconds"] = helpdesk_bot.uptime_seconds()
        return payload
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}


@app.get("/status")
async def status(request: Request):
    """Table counts for the engine (admin only)."""
    if not _is_admin_request(request):
        return Response(status_code=403)
    if not helpdesk_bot or not helpdesk_bot.is_running():
        return {"status": "initializing"}

    from database.db import db

    return {
        "status": "running",
        "version": "1.0.0",
        "stats": await db.get_table_counts(),
        "config": {
            "tag_trigger_dedup_seconds": config.tag_trigger_dedup_seconds,
            "public_storage_prefix": config.public_storage_prefix,
        },
    }


@app.get("/")
async def root():
    """
    Root endpoint with API information.
    Note: Webhook path is intentionally not exposed for security.
    """
    return {
        "name": "Help-desk Automation Engine",
        "version": "1.0.0",
        "status": "running" if helpdesk_bot and helpdesk_bot.is_running() else "initializing",
        "endpoints": {
            "health": "/health",
            "status": "/status",
            "runs": "/api/automations/{automation_id}/runs",
        },
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
