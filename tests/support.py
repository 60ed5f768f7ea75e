import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock

from groupsub.db import DB
from groupsub.events import ButtonPress, MembershipChange, MessageEvent, Sender
from groupsub.services import Services
from groupsub.sessions import SessionStore
from groupsub.setup_flow import SetupMachine
from groupsub.subscriptions import SubscriptionManager
from groupsub.transport import ChatProfile, TelegramTransport

BOT_ID = 4242
ADMIN_ID = 100
USER_ID = 200
GROUP_ID = -1001

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class TempDBMixin:
    """Gives each test a fresh sqlite file."""

    def make_db(self) -> DB:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        db = DB(str(Path(tmp.name) / "test.sqlite3"))
        db.initialize()
        return db


def make_transport() -> AsyncMock:
    transport = AsyncMock(spec=TelegramTransport)
    transport.bot_id = BOT_ID
    transport.bot_can_remove_members.return_value = True
    transport.get_profile.return_value = ChatProfile(chat_id=USER_ID, username="payer")
    return transport


def make_services(db: DB, clock: FakeClock = None, duration: timedelta = timedelta(days=30)) -> Services:
    return Services(
        db=db,
        transport=make_transport(),
        setup=SetupMachine(db),
        subscriptions=SubscriptionManager(db, duration, clock=clock or FakeClock()),
        sessions=SessionStore(),
    )


def configure_group(db: DB, group_id: int = GROUP_ID, admin_id: int = ADMIN_ID, name: str = "Paid Club") -> None:
    db.create_group(group_id, admin_id, name)
    machine = SetupMachine(db)
    machine.begin(group_id, admin_id)
    for answer in ("Test Bank", "Jane Doe", "0123456789", "$10"):
        machine.answer(group_id, answer)


_counter = [0]


def _next_id() -> int:
    _counter[0] += 1
    return _counter[0]


def private_text(user_id: int, text: str = "", photo: str = None, document: str = None, username: str = None) -> MessageEvent:
    return MessageEvent(
        message_id=_next_id(),
        chat_id=user_id,
        chat_type="private",
        date=int(T0.timestamp()),
        sender=Sender(user_id=user_id, username=username, first_name="Test"),
        text=text,
        photo_file_id=photo,
        document_file_id=document,
    )


def button(user_id: int, data: str) -> ButtonPress:
    return ButtonPress(
        callback_id=f"cb-{_next_id()}",
        sender=Sender(user_id=user_id, username="payer", first_name="Pat"),
        data=data,
        chat_id=user_id,
        message_id=_next_id(),
    )


def bot_added(group_id: int = GROUP_ID, actor_id: int = ADMIN_ID, title: str = "Paid Club") -> MembershipChange:
    return MembershipChange(
        message_id=_next_id(),
        chat_id=group_id,
        chat_type="supergroup",
        chat_title=title,
        date=int(T0.timestamp()),
        actor=Sender(user_id=actor_id, first_name="Admin"),
        joined_user_ids=(BOT_ID,),
    )


def sent_texts(transport: AsyncMock, chat_id: int = None):
    texts = []
    for call in transport.send_message.await_args_list:
        target = call.args[0] if call.args else call.kwargs.get("chat_id")
        if chat_id is None or target == chat_id:
            texts.append(call.args[1] if len(call.args) > 1 else call.kwargs.get("text"))
    return texts
