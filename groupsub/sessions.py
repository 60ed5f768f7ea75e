from dataclasses import dataclass
from typing import Optional

from cachetools import TTLCache

from .events import Receipt

SESSION_TTL_SECONDS = 24 * 60 * 60


@dataclass
class Session:
    selected_group_id: Optional[int] = None
    receipt_file_id: Optional[str] = None
    receipt_type: Optional[str] = None

    @property
    def receipt(self) -> Optional[Receipt]:
        if self.receipt_file_id and self.receipt_type:
            return Receipt(self.receipt_file_id, self.receipt_type)
        return None


class SessionStore:
    """In-memory per-user payment selection state. Not persisted."""

    def __init__(self, maxsize: int = 10000, ttl: int = SESSION_TTL_SECONDS) -> None:
        self._sessions = TTLCache(maxsize=maxsize, ttl=ttl)

    def get(self, user_id: int) -> Session:
        return self._sessions.get(user_id) or Session()

    def select(self, user_id: int, group_id: int) -> Session:
        session = Session(selected_group_id=group_id)
        self._sessions[user_id] = session
        return session

    def attach_receipt(self, user_id: int, receipt: Receipt) -> Optional[Session]:
        session = self._sessions.get(user_id)
        if session is None or session.selected_group_id is None:
            return None
        session.receipt_file_id = receipt.file_id
        session.receipt_type = receipt.kind
        self._sessions[user_id] = session
        return session

    def clear(self, user_id: int) -> None:
        self._sessions.pop(user_id, None)
