import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .db import DB
from .models import ExpiredMembership, Membership, fallback_username, to_timestamp, utcnow

logger = logging.getLogger(__name__)


class SubscriptionManager:
    """Grants, lists and revokes time-limited memberships. Store only, no messaging."""

    def __init__(
        self,
        db: DB,
        duration: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ):
        if duration <= timedelta(0):
            raise ValueError("Subscription duration must be positive")
        self.db = db
        self.duration = duration
        self.clock = clock

    def grant_membership(self, group_id: int, user_id: int, username: Optional[str] = None) -> Optional[Membership]:
        join_ts = to_timestamp(self.clock())
        expiry_ts = join_ts + max(1, int(self.duration.total_seconds()))
        username = username or fallback_username(user_id)

        if not self.db.upsert_membership(group_id, user_id, username, join_ts, expiry_ts):
            logger.warning("Cannot grant membership: group %s does not exist", group_id)
            return None

        membership = self.db.get_membership(group_id, user_id)
        logger.info(
            "Membership granted: group=%s user=%s expires=%s",
            group_id,
            user_id,
            membership.expiry_date.isoformat() if membership else expiry_ts,
        )
        return membership

    def revoke_membership(self, group_id: int, user_id: int) -> bool:
        removed = self.db.delete_membership(group_id, user_id)
        if removed:
            logger.info("Membership revoked: group=%s user=%s", group_id, user_id)
        return removed

    def list_expired(self, now: Optional[datetime] = None) -> List[ExpiredMembership]:
        return self.db.get_expired_memberships(to_timestamp(now or self.clock()))

    def get_membership(self, group_id: int, user_id: int) -> Optional[Membership]:
        return self.db.get_membership(group_id, user_id)

    def list_memberships(self, group_id: int) -> List[Membership]:
        return self.db.get_memberships(group_id)
