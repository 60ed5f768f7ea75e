import logging
import traceback
from typing import Dict, Any, Callable, Awaitable, Union

from aiogram import BaseMiddleware
from aiogram.types import Message, CallbackQuery
from cachetools import LRUCache

from .events import to_inbound
from .texts import ERROR_MESSAGES

logger = logging.getLogger(__name__)

PROCESSED_UPDATES_CAPACITY = 1000


class ProcessedUpdates:
    """Bounded record of recently handled event keys, oldest forgotten first."""

    def __init__(self, capacity: int = PROCESSED_UPDATES_CAPACITY) -> None:
        self._keys = LRUCache(maxsize=capacity)

    def __len__(self) -> int:
        return len(self._keys)

    def is_processed(self, key: str) -> bool:
        return key in self._keys

    def mark_processed(self, key: str) -> None:
        self._keys[key] = True

    def check_and_mark(self, key: str) -> bool:
        """Return True and record the key if it has not been seen yet."""
        if key in self._keys:
            # Touch so a key seen repeatedly stays in the window
            self._keys[key] = True
            return False
        self._keys[key] = True
        return True


class IdempotencyMiddleware(BaseMiddleware):
    """Drop redelivered messages and button presses before any handler runs."""

    def __init__(self, ledger: ProcessedUpdates = None) -> None:
        self.ledger = ledger or ProcessedUpdates()

    async def __call__(
        self,
        handler: Callable[[Union[Message, CallbackQuery], Dict[str, Any]], Awaitable[Any]],
        event: Union[Message, CallbackQuery],
        data: Dict[str, Any],
    ) -> Any:
        inbound = to_inbound(event)
        if inbound is None:
            return await handler(event, data)

        if not self.ledger.check_and_mark(inbound.key):
            logger.info("Skipping duplicate update: %s", inbound.key)
            if isinstance(event, CallbackQuery):
                bot = data.get("bot")
                if bot is not None:
                    try:
                        await bot.answer_callback_query(event.id)
                    except Exception:
                        logger.warning("Failed to acknowledge duplicate callback %s", event.id)
            return None

        data["inbound"] = inbound
        return await handler(event, data)


class ErrorHandlingMiddleware(BaseMiddleware):
    """Catch and log exceptions with safe fallbacks."""

    async def __call__(
        self,
        handler: Callable[[Union[Message, CallbackQuery], Dict[str, Any]], Awaitable[Any]],
        event: Union[Message, CallbackQuery],
        data: Dict[str, Any],
    ) -> Any:
        try:
            return await handler(event, data)
        except Exception:
            logger.error("Unhandled exception in handler:\n%s", traceback.format_exc())
            try:
                if isinstance(event, CallbackQuery):
                    try:
                        await event.answer()
                    except Exception:
                        logger.warning("Failed to answer callback after error.")
                    if event.message:
                        await event.message.answer(ERROR_MESSAGES["generic"])
                elif isinstance(event, Message) and event.chat.type == "private":
                    await event.answer(ERROR_MESSAGES["generic"])
            except Exception:
                logger.warning("Failed to deliver error notice to user.")
            return None


class CallbackLoggingMiddleware(BaseMiddleware):
    """Log callback data for routing diagnostics."""

    async def __call__(
        self,
        handler: Callable[[CallbackQuery, Dict[str, Any]], Awaitable[Any]],
        event: CallbackQuery,
        data: Dict[str, Any],
    ) -> Any:
        if event.from_user:
            logger.info(
                "Callback received: data=%s chat_id=%s user_id=%s",
                event.data,
                event.message.chat.id if event.message else None,
                event.from_user.id,
            )
        return await handler(event, data)
