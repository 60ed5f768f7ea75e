import asyncio
import logging
import time
from datetime import datetime, timezone

from aiogram import Bot, Dispatcher
from aiogram.exceptions import TelegramAPIError
from aiogram.webhook.aiohttp_server import SimpleRequestHandler, setup_application
from aiohttp import web

from . import __version__
from .config import Settings
from .db import DB

logger = logging.getLogger(__name__)

BOT_KEY = web.AppKey("bot", Bot)
DB_KEY = web.AppKey("db", DB)
SETTINGS_KEY = web.AppKey("settings", Settings)
STARTED_AT_KEY = web.AppKey("started_at", float)


async def health(request: web.Request) -> web.Response:
    db = request.app[DB_KEY]
    settings = request.app[SETTINGS_KEY]
    database_ok = db.health_check()
    payload = {
        "status": "ok" if database_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - request.app[STARTED_AT_KEY], 3),
        "environment": settings.environment,
        "test_mode": settings.test_mode,
        "database_ok": database_ok,
    }
    return web.json_response(payload, status=200 if database_ok else 503)


async def index(request: web.Request) -> web.Response:
    settings = request.app[SETTINGS_KEY]
    return web.json_response(
        {
            "service": "groupsub",
            "version": __version__,
            "status": "running",
            "webhook_path": settings.webhook_path,
        }
    )


async def webhook_info(request: web.Request) -> web.Response:
    bot = request.app[BOT_KEY]
    try:
        info = await bot.get_webhook_info()
    except TelegramAPIError as exc:
        logger.error("Failed to fetch webhook info: %s", exc)
        return web.json_response({"error": str(exc)}, status=500)
    return web.json_response(info.model_dump(mode="json"))


def add_service_routes(app: web.Application, bot: Bot, db: DB, settings: Settings) -> None:
    app[BOT_KEY] = bot
    app[DB_KEY] = db
    app[SETTINGS_KEY] = settings
    app[STARTED_AT_KEY] = time.monotonic()
    app.router.add_get("/health", health)
    app.router.add_get("/", index)
    app.router.add_get("/webhook-info", webhook_info)


def build_app(dp: Dispatcher, bot: Bot, db: DB, settings: Settings, with_webhook: bool = True) -> web.Application:
    app = web.Application()
    add_service_routes(app, bot, db, settings)
    if with_webhook:
        SimpleRequestHandler(
            dispatcher=dp,
            bot=bot,
            secret_token=settings.webhook_secret or None,
        ).register(app, path=settings.webhook_path)
        setup_application(app, dp, bot=bot)
    return app


async def start_http(app: web.Application, settings: Settings) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host=settings.host, port=settings.port)
    await site.start()
    logger.info("HTTP server listening on %s:%s", settings.host, settings.port)
    return runner


async def serve(app: web.Application, settings: Settings) -> None:
    runner = await start_http(app, settings)
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
