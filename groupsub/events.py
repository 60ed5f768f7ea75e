"""Inbound update variants.

Every Telegram update the bot reacts to is converted once, at the edge, into
one of three frozen records: a private or group ``MessageEvent``, a
``MembershipChange`` service message, or a ``ButtonPress``. Handlers dispatch
on the variant type instead of probing optional fields on raw updates.
"""

from dataclasses import dataclass
from typing import Optional, Tuple, Union

from aiogram.types import CallbackQuery, Message, User

from .models import fallback_username


@dataclass(frozen=True)
class Sender:
    user_id: int
    username: Optional[str] = None
    first_name: str = ""
    last_name: str = ""

    @property
    def display_name(self) -> str:
        if self.username:
            return f"@{self.username}"
        return fallback_username(self.user_id)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    @classmethod
    def from_user(cls, user: User) -> "Sender":
        return cls(
            user_id=user.id,
            username=user.username,
            first_name=user.first_name or "",
            last_name=user.last_name or "",
        )


@dataclass(frozen=True)
class Receipt:
    file_id: str
    kind: str  # "photo" or "document"


@dataclass(frozen=True)
class MessageEvent:
    message_id: int
    chat_id: int
    chat_type: str
    date: int
    sender: Optional[Sender]
    text: str = ""
    photo_file_id: Optional[str] = None
    document_file_id: Optional[str] = None

    @property
    def key(self) -> str:
        return f"msg:{self.chat_id}:{self.message_id}:{self.date}"

    @property
    def is_private(self) -> bool:
        return self.chat_type == "private"

    @property
    def receipt(self) -> Optional[Receipt]:
        if self.photo_file_id:
            return Receipt(self.photo_file_id, "photo")
        if self.document_file_id:
            return Receipt(self.document_file_id, "document")
        return None


@dataclass(frozen=True)
class MembershipChange:
    message_id: int
    chat_id: int
    chat_type: str
    chat_title: str
    date: int
    actor: Optional[Sender]
    joined_user_ids: Tuple[int, ...] = ()
    left_user_id: Optional[int] = None

    @property
    def key(self) -> str:
        return f"msg:{self.chat_id}:{self.message_id}:{self.date}"


@dataclass(frozen=True)
class ButtonPress:
    callback_id: str
    sender: Sender
    data: str
    chat_id: Optional[int] = None
    message_id: Optional[int] = None

    @property
    def key(self) -> str:
        return f"cb:{self.callback_id}"


InboundEvent = Union[MessageEvent, MembershipChange, ButtonPress]


def from_message(message: Message) -> Union[MessageEvent, MembershipChange]:
    sender = Sender.from_user(message.from_user) if message.from_user else None
    date = int(message.date.timestamp()) if message.date else 0

    if message.new_chat_members or message.left_chat_member:
        return MembershipChange(
            message_id=message.message_id,
            chat_id=message.chat.id,
            chat_type=message.chat.type,
            chat_title=message.chat.title or "",
            date=date,
            actor=sender,
            joined_user_ids=tuple(user.id for user in message.new_chat_members or ()),
            left_user_id=message.left_chat_member.id if message.left_chat_member else None,
        )

    return MessageEvent(
        message_id=message.message_id,
        chat_id=message.chat.id,
        chat_type=message.chat.type,
        date=date,
        sender=sender,
        text=message.text or message.caption or "",
        photo_file_id=message.photo[-1].file_id if message.photo else None,
        document_file_id=message.document.file_id if message.document else None,
    )


def from_callback(callback: CallbackQuery) -> ButtonPress:
    chat_id = message_id = None
    if callback.message is not None:
        chat_id = callback.message.chat.id
        message_id = callback.message.message_id
    return ButtonPress(
        callback_id=callback.id,
        sender=Sender.from_user(callback.from_user),
        data=callback.data or "",
        chat_id=chat_id,
        message_id=message_id,
    )


def to_inbound(event: Union[Message, CallbackQuery]) -> Optional[InboundEvent]:
    if isinstance(event, CallbackQuery):
        return from_callback(event)
    if isinstance(event, Message):
        return from_message(event)
    return None
