import asyncio
import logging
from logging import Logger
from pathlib import Path
from typing import List, Optional

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.client.session.aiohttp import AiohttpSession
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramAPIError
from aiogram.types import BotCommand

from .config import Settings, settings
from .db import DB
from .errors import StoreError
from .handlers import build_router
from .middlewares import (
    CallbackLoggingMiddleware,
    ErrorHandlingMiddleware,
    IdempotencyMiddleware,
    ProcessedUpdates,
)
from .scheduler import ExpirySweeper
from .server import build_app, serve, start_http
from .services import Services, build_services
from .texts import BOT_COMMANDS, ERROR_MESSAGES, format_duration


def setup_logging() -> Logger:
    logger = logging.getLogger()
    logger.setLevel(settings.log_level)

    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    if not logger.handlers:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

        try:
            log_dir = Path("logs")
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_dir / "groupsub.log")
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError:
            logger.warning("Could not write logs/groupsub.log; continuing with console logging only")

    return logging.getLogger(__name__)


def build_dispatcher(services: Services, ledger: Optional[ProcessedUpdates] = None) -> Dispatcher:
    dp = Dispatcher()
    dp["services"] = services

    idempotency = IdempotencyMiddleware(ledger)
    dp.message.outer_middleware(idempotency)
    dp.callback_query.outer_middleware(idempotency)
    dp.message.middleware(ErrorHandlingMiddleware())
    dp.callback_query.middleware(ErrorHandlingMiddleware())
    dp.callback_query.middleware(CallbackLoggingMiddleware())

    dp.include_router(build_router())
    return dp


async def register_webhook(bot: Bot, config: Settings, allowed_updates: List[str]) -> bool:
    logger = logging.getLogger(__name__)
    try:
        await bot.set_webhook(
            url=config.webhook_endpoint,
            secret_token=config.webhook_secret or None,
            allowed_updates=allowed_updates,
        )
    except TelegramAPIError as exc:
        logger.error("Failed to register webhook %s: %s", config.webhook_endpoint, exc)
        return False
    logger.info("Webhook registered: %s", config.webhook_endpoint)
    return True


async def main() -> None:
    logger = setup_logging()

    problems = settings.startup_problems()
    if problems:
        for problem in problems:
            logger.error("Configuration problem: %s", problem)
        print(ERROR_MESSAGES["config_missing"])
        raise SystemExit(1)

    logger.info(
        "Starting: environment=%s test_mode=%s subscription=%s sweep_every=%s",
        settings.environment,
        settings.test_mode,
        format_duration(settings.subscription_duration),
        format_duration(settings.sweep_interval),
    )

    db = DB(settings.db_path)
    try:
        db.initialize()
    except StoreError as exc:
        logger.critical("Cannot start without a working database: %s", exc)
        raise SystemExit(1)

    bot = Bot(
        token=settings.bot_token,
        session=AiohttpSession(timeout=settings.request_timeout),
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    services = build_services(db, bot, settings)
    dp = build_dispatcher(services)
    sweeper = ExpirySweeper(
        services.subscriptions,
        services.transport,
        interval=settings.sweep_interval,
        initial_delay=settings.initial_sweep_delay,
    )

    try:
        try:
            bot_info = await bot.get_me()
            logger.info("Starting GroupSub bot: @%s", bot_info.username)
        except TelegramAPIError as exc:
            logger.error("Failed to fetch bot info: %s", exc)

        await bot.set_my_commands(
            [BotCommand(command=command, description=description) for command, description in BOT_COMMANDS]
        )
        sweeper.start()

        allowed_updates = dp.resolve_used_update_types()
        if await register_webhook(bot, settings, allowed_updates):
            await serve(build_app(dp, bot, db, settings), settings)
        elif settings.is_development:
            logger.warning("Falling back to long polling for development")
            await bot.delete_webhook(drop_pending_updates=False)
            runner = await start_http(build_app(dp, bot, db, settings, with_webhook=False), settings)
            try:
                await dp.start_polling(bot, allowed_updates=allowed_updates)
            finally:
                await runner.cleanup()
        else:
            logger.error("Webhook not registered; serving HTTP so the webhook can be fixed and retried")
            await serve(build_app(dp, bot, db, settings), settings)
    except Exception as exc:
        logger.error("Bot failed: %s", exc)
        raise
    finally:
        sweeper.stop()
        await bot.session.close()
        logger.info("Bot stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
