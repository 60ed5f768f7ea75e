import asyncio
import logging
import traceback
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .errors import MemberNotFoundError, PermissionDeniedError, TransportError
from .models import ExpiredMembership
from .subscriptions import SubscriptionManager
from .texts import USER_EXPIRED
from .transport import TelegramTransport

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "expiry_sweep"
INITIAL_SWEEP_JOB_ID = "expiry_sweep_initial"


class SweepOutcome(str, Enum):
    REMOVED = "removed"
    CLEANED_WITHOUT_KICK = "cleaned_without_kick"
    ALREADY_GONE = "already_gone"
    RETAINED = "retained"
    FAILED = "failed"


@dataclass
class SweepReport:
    found: int = 0
    removed: int = 0
    cleaned_without_kick: int = 0
    already_gone: int = 0
    retained: int = 0
    failed: int = 0

    def record(self, outcome: SweepOutcome) -> None:
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)


class ExpirySweeper:
    """Periodically removes users whose membership has expired."""

    def __init__(
        self,
        subscriptions: SubscriptionManager,
        transport: TelegramTransport,
        interval: timedelta,
        initial_delay: timedelta = timedelta(seconds=5),
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.subscriptions = subscriptions
        self.transport = transport
        self.interval = interval
        self.initial_delay = initial_delay
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self._lock = asyncio.Lock()

    def start(self) -> None:
        self.scheduler.add_job(
            self.sweep,
            "interval",
            seconds=int(self.interval.total_seconds()),
            id=SWEEP_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            misfire_grace_time=60,
        )
        self.scheduler.add_job(
            self.sweep,
            "date",
            run_date=datetime.now(timezone.utc) + self.initial_delay,
            id=INITIAL_SWEEP_JOB_ID,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            "Expiry sweeper started: every %ss, first run in %ss",
            int(self.interval.total_seconds()),
            int(self.initial_delay.total_seconds()),
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Expiry sweeper stopped")

    async def sweep(self) -> SweepReport:
        report = SweepReport()
        if self._lock.locked():
            logger.info("Previous expiry sweep still running; skipping this tick")
            return report

        async with self._lock:
            expired = self.subscriptions.list_expired()
            report.found = len(expired)
            if not expired:
                logger.debug("Expiry sweep: nothing to do")
                return report

            logger.info("Expiry sweep: %s expired memberships", report.found)
            for entry in expired:
                try:
                    outcome = await self.process_expired(entry)
                except Exception:
                    logger.error(
                        "Failed to process expired membership group=%s user=%s:\n%s",
                        entry.group_id,
                        entry.user_id,
                        traceback.format_exc(),
                    )
                    outcome = SweepOutcome.FAILED
                report.record(outcome)

        logger.info(
            "Expiry sweep done: found=%s removed=%s cleaned_without_kick=%s "
            "already_gone=%s retained=%s failed=%s",
            report.found,
            report.removed,
            report.cleaned_without_kick,
            report.already_gone,
            report.retained,
            report.failed,
        )
        return report

    async def process_expired(self, entry: ExpiredMembership) -> SweepOutcome:
        group_id, user_id = entry.group_id, entry.user_id

        try:
            privileged = await self.transport.bot_can_remove_members(group_id)
        except TransportError as exc:
            logger.warning("Could not check rights in group %s; keeping user %s for retry: %s", group_id, user_id, exc)
            return SweepOutcome.RETAINED

        if not privileged:
            logger.warning(
                "Bot cannot remove members in group %s; dropping expired record for user %s "
                "without removing them from the chat. Grant the bot 'Ban users' rights.",
                group_id,
                user_id,
            )
            self.subscriptions.revoke_membership(group_id, user_id)
            await self._notify_expired(user_id)
            return SweepOutcome.CLEANED_WITHOUT_KICK

        try:
            await self.transport.kick_member(group_id, user_id)
        except MemberNotFoundError as exc:
            logger.info("User %s already gone from group %s (%s)", user_id, group_id, exc)
            self.subscriptions.revoke_membership(group_id, user_id)
            return SweepOutcome.ALREADY_GONE
        except PermissionDeniedError as exc:
            logger.warning(
                "Not enough rights to remove user %s from group %s; will retry: %s",
                user_id,
                group_id,
                exc,
            )
            return SweepOutcome.RETAINED
        except TransportError as exc:
            logger.warning("Removing user %s from group %s failed; will retry: %s", user_id, group_id, exc)
            return SweepOutcome.RETAINED

        self.subscriptions.revoke_membership(group_id, user_id)
        await self._notify_expired(user_id)
        logger.info("Removed expired user %s from group %s", user_id, group_id)
        return SweepOutcome.REMOVED

    async def _notify_expired(self, user_id: int) -> None:
        try:
            await self.transport.send_message(user_id, USER_EXPIRED)
        except TransportError as exc:
            logger.warning("Could not notify user %s about expiry: %s", user_id, exc)
