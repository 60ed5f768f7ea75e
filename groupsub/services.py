from dataclasses import dataclass
from datetime import timedelta

from aiogram import Bot

from .config import Settings
from .db import DB
from .sessions import SessionStore
from .setup_flow import SetupMachine
from .subscriptions import SubscriptionManager
from .transport import TelegramTransport


@dataclass
class Services:
    db: DB
    transport: TelegramTransport
    setup: SetupMachine
    subscriptions: SubscriptionManager
    sessions: SessionStore

    @property
    def duration(self) -> timedelta:
        return self.subscriptions.duration


def build_services(db: DB, bot: Bot, settings: Settings) -> Services:
    return Services(
        db=db,
        transport=TelegramTransport(bot),
        setup=SetupMachine(db),
        subscriptions=SubscriptionManager(db, settings.subscription_duration),
        sessions=SessionStore(),
    )
