import logging
from dataclasses import dataclass
from typing import Awaitable, Optional, TypeVar

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError, TelegramForbiddenError
from aiogram.types import InlineKeyboardMarkup

from .errors import MemberNotFoundError, PermissionDeniedError, TransportError
from .models import fallback_username

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOT_FOUND_MARKERS = (
    "user not found",
    "chat not found",
    "user is not a member",
    "participant_id_invalid",
    "user_not_participant",
    "member not found",
)

NO_RIGHTS_MARKERS = (
    "not enough rights",
    "need administrator rights",
    "chat_admin_required",
    "have no rights",
    "can't remove chat owner",
    "user is an administrator of the chat",
)


def map_api_error(exc: TelegramAPIError, method: str = "") -> TransportError:
    text = str(exc).lower()
    if any(marker in text for marker in NOT_FOUND_MARKERS):
        return MemberNotFoundError(str(exc), method)
    if isinstance(exc, TelegramForbiddenError) or any(marker in text for marker in NO_RIGHTS_MARKERS):
        return PermissionDeniedError(str(exc), method)
    return TransportError(str(exc), method)


@dataclass(frozen=True)
class ChatProfile:
    chat_id: int
    username: Optional[str] = None
    first_name: str = ""
    title: str = ""

    @property
    def display_name(self) -> str:
        if self.username:
            return f"@{self.username}"
        return self.first_name or self.title or fallback_username(self.chat_id)


class TelegramTransport:
    """Thin adapter over aiogram's Bot that raises the bot's own error types."""

    def __init__(self, bot: Bot):
        self.bot = bot

    @property
    def bot_id(self) -> int:
        return self.bot.id

    async def _call(self, method: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except TelegramAPIError as exc:
            raise map_api_error(exc, method) from exc

    async def send_message(
        self,
        chat_id: int,
        text: str,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
    ) -> None:
        await self._call(
            "sendMessage",
            self.bot.send_message(chat_id=chat_id, text=text, reply_markup=reply_markup),
        )

    async def edit_message(
        self,
        chat_id: int,
        message_id: Optional[int],
        text: str,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
    ) -> None:
        if message_id is None:
            await self.send_message(chat_id, text, reply_markup=reply_markup)
            return
        try:
            await self._call(
                "editMessageText",
                self.bot.edit_message_text(
                    text=text,
                    chat_id=chat_id,
                    message_id=message_id,
                    reply_markup=reply_markup,
                ),
            )
        except TransportError as exc:
            if "message is not modified" in str(exc).lower():
                return
            logger.warning("Failed to edit message %s in %s: %s", message_id, chat_id, exc)
            await self.send_message(chat_id, text, reply_markup=reply_markup)

    async def send_photo(self, chat_id: int, file_id: str, caption: str = "") -> None:
        await self._call(
            "sendPhoto",
            self.bot.send_photo(chat_id=chat_id, photo=file_id, caption=caption or None),
        )

    async def send_document(self, chat_id: int, file_id: str, caption: str = "") -> None:
        await self._call(
            "sendDocument",
            self.bot.send_document(chat_id=chat_id, document=file_id, caption=caption or None),
        )

    async def get_profile(self, chat_id: int) -> ChatProfile:
        chat = await self._call("getChat", self.bot.get_chat(chat_id))
        return ChatProfile(
            chat_id=chat_id,
            username=getattr(chat, "username", None),
            first_name=getattr(chat, "first_name", None) or "",
            title=getattr(chat, "title", None) or "",
        )

    async def bot_can_remove_members(self, group_id: int) -> bool:
        """False when the bot definitely lacks ban rights; other lookup failures raise TransportError."""
        try:
            bot_member = await self._call("getChatMember", self.bot.get_chat_member(group_id, self.bot.id))
        except (MemberNotFoundError, PermissionDeniedError) as exc:
            logger.warning("Could not read bot permissions in %s: %s", group_id, exc)
            return False
        if bot_member.status != "administrator":
            return False
        return bool(getattr(bot_member, "can_restrict_members", False))

    async def kick_member(self, group_id: int, user_id: int) -> None:
        """Remove a user without leaving a lasting ban."""
        await self._call("banChatMember", self.bot.ban_chat_member(chat_id=group_id, user_id=user_id))
        await self._call(
            "unbanChatMember",
            self.bot.unban_chat_member(chat_id=group_id, user_id=user_id, only_if_banned=True),
        )

    async def answer_callback(self, callback_id: str, text: Optional[str] = None, show_alert: bool = False) -> None:
        await self._call(
            "answerCallbackQuery",
            self.bot.answer_callback_query(callback_query_id=callback_id, text=text, show_alert=show_alert),
        )
