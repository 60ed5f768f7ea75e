from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .states import SetupStep


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> int:
    return int(value.timestamp())


def from_timestamp(value: int) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def fallback_username(user_id: int) -> str:
    return f"User {user_id}"


@dataclass
class GroupConfig:
    bank_name: str = ""
    account_name: str = ""
    account_number: str = ""
    price: str = ""

    @property
    def is_complete(self) -> bool:
        return all((self.bank_name, self.account_name, self.account_number, self.price))


@dataclass
class Membership:
    group_id: int
    user_id: int
    username: str
    join_date: datetime
    expiry_date: datetime
    is_active: bool = True

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and (now or utcnow()) >= self.expiry_date

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Membership":
        return cls(
            group_id=int(row["group_id"]),
            user_id=int(row["user_id"]),
            username=row.get("username") or fallback_username(row["user_id"]),
            join_date=from_timestamp(row["join_ts"]),
            expiry_date=from_timestamp(row["expiry_ts"]),
            is_active=bool(row["is_active"]),
        )


@dataclass
class Group:
    group_id: int
    admin_id: int
    group_name: str = ""
    config: GroupConfig = field(default_factory=GroupConfig)
    is_setup_complete: bool = False
    setup_step: Optional[SetupStep] = None
    # Stored step text, kept so unknown values can be reported
    raw_setup_step: Optional[str] = None
    created_at: Optional[datetime] = None
    members: Dict[int, Membership] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.group_name or f"Group {self.group_id}"

    @property
    def is_configured(self) -> bool:
        return self.is_setup_complete and self.config.is_complete

    @property
    def in_setup(self) -> bool:
        return self.raw_setup_step is not None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Group":
        raw_step = row.get("setup_step")
        return cls(
            group_id=int(row["group_id"]),
            admin_id=int(row["admin_id"]),
            group_name=row.get("group_name") or "",
            config=GroupConfig(
                bank_name=row.get("bank_name") or "",
                account_name=row.get("account_name") or "",
                account_number=row.get("account_number") or "",
                price=row.get("price") or "",
            ),
            is_setup_complete=bool(row.get("is_setup_complete")),
            setup_step=SetupStep.parse(raw_step),
            raw_setup_step=raw_step,
            created_at=from_timestamp(row["created_at"]) if row.get("created_at") else None,
        )


@dataclass(frozen=True)
class ExpiredMembership:
    group_id: int
    user_id: int
    membership: Membership
