import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .config import settings
from .errors import StoreError
from .models import (
    ExpiredMembership,
    Group,
    Membership,
    fallback_username,
    from_timestamp,
    to_timestamp,
    utcnow,
)
from .states import SetupStep

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS groups (
    group_id INTEGER PRIMARY KEY,
    admin_id INTEGER NOT NULL,
    group_name TEXT NOT NULL DEFAULT '',
    bank_name TEXT NOT NULL DEFAULT '',
    account_name TEXT NOT NULL DEFAULT '',
    account_number TEXT NOT NULL DEFAULT '',
    price TEXT NOT NULL DEFAULT '',
    is_setup_complete INTEGER NOT NULL DEFAULT 0,
    setup_step TEXT,
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_groups_admin ON groups(admin_id);

CREATE TABLE IF NOT EXISTS memberships (
    group_id INTEGER NOT NULL,
    user_id INTEGER NOT NULL,
    username TEXT NOT NULL,
    join_ts INTEGER NOT NULL,
    expiry_ts INTEGER NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (group_id, user_id),
    FOREIGN KEY(group_id) REFERENCES groups(group_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_memberships_expiry ON memberships(is_active, expiry_ts);
"""

CONFIG_FIELDS = ("bank_name", "account_name", "account_number", "price")

# Legacy JSON document keys for each config column
LEGACY_CONFIG_KEYS = {
    "bank_name": "bankName",
    "account_name": "accountName",
    "account_number": "accountNumber",
    "price": "price",
}


class DB:
    def __init__(self, path: Optional[str] = None):
        self.path = path or settings.db_path
        self._initialized = False
        self._lock = threading.RLock()

    def _ensure_directory(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)

    def _init_db(self) -> None:
        """Create the database file and schema if they are missing"""
        if self._initialized:
            return

        try:
            self._ensure_directory()
            conn = sqlite3.connect(self.path, timeout=30)
        except (OSError, sqlite3.Error) as exc:
            logger.error("Failed to open database %s: %s", self.path, exc)
            raise StoreError(f"Cannot open database at {self.path}: {exc}") from exc

        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA foreign_keys=ON;")
            conn.execute("PRAGMA busy_timeout=30000;")

            conn.executescript(SCHEMA)
            conn.commit()
            self._initialized = True
            logger.info("Database initialized at %s", self.path)
        except sqlite3.Error as exc:
            logger.error("Failed to initialize database: %s", exc)
            raise StoreError(f"Cannot initialize database schema: {exc}") from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        with self._lock:
            self._init_db()

    @contextmanager
    def _conn(self):
        """One serialized transaction: commit on success, roll back on any error"""
        with self._lock:
            if not self._initialized:
                self._init_db()

            conn = sqlite3.connect(self.path, timeout=30)
            conn.row_factory = sqlite3.Row
            try:
                conn.execute("PRAGMA foreign_keys=ON;")
                conn.execute("PRAGMA busy_timeout=30000;")

                yield conn
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                logger.error("Database error: %s", exc)
                raise StoreError(str(exc)) from exc
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    # Groups

    def create_group(
        self,
        group_id: int,
        admin_id: int,
        group_name: str = "",
        created_at: Optional[datetime] = None,
    ) -> bool:
        """Insert a blank group record. Returns False if it already exists."""
        created = to_timestamp(created_at or utcnow())
        with self._conn() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO groups (group_id, admin_id, group_name, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (group_id, admin_id, group_name or "", created),
            )
            created_new = cursor.rowcount > 0
        if created_new:
            logger.info("Group %s created for admin %s", group_id, admin_id)
        return created_new

    def get_group(self, group_id: int, include_members: bool = False) -> Optional[Group]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM groups WHERE group_id = ?",
                (group_id,),
            ).fetchone()
            if not row:
                return None
            group = Group.from_row(dict(row))
            if include_members:
                group.members = {
                    member.user_id: member for member in self._memberships_conn(conn, group_id)
                }
            return group

    def get_groups_by_admin(self, admin_id: int) -> List[Group]:
        with self._conn() as conn:
            cursor = conn.execute(
                "SELECT * FROM groups WHERE admin_id = ? ORDER BY created_at, group_id",
                (admin_id,),
            )
            return [Group.from_row(dict(row)) for row in cursor.fetchall()]

    def is_admin(self, user_id: int) -> bool:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT 1 FROM groups WHERE admin_id = ? LIMIT 1",
                (user_id,),
            ).fetchone()
            return row is not None

    def get_configured_groups(self) -> List[Group]:
        with self._conn() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM groups
                WHERE is_setup_complete = 1
                  AND bank_name != '' AND account_name != ''
                  AND account_number != '' AND price != ''
                ORDER BY created_at, group_id
                """
            )
            return [Group.from_row(dict(row)) for row in cursor.fetchall()]

    def get_pending_setups(self, admin_id: int) -> List[Group]:
        with self._conn() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM groups
                WHERE admin_id = ? AND setup_step IS NOT NULL
                ORDER BY created_at, group_id
                """,
                (admin_id,),
            )
            return [Group.from_row(dict(row)) for row in cursor.fetchall()]

    def start_setup(self, group_id: int, step: SetupStep = SetupStep.BANK_NAME) -> bool:
        with self._conn() as conn:
            cursor = conn.execute(
                "UPDATE groups SET is_setup_complete = 0, setup_step = ? WHERE group_id = ?",
                (step.value, group_id),
            )
            return cursor.rowcount > 0

    def apply_setup_answer(
        self,
        group_id: int,
        step: SetupStep,
        value: str,
        next_step: Optional[SetupStep],
    ) -> bool:
        """Store one setup answer and advance the step in a single transaction."""
        if step.field not in CONFIG_FIELDS:
            raise ValueError("Invalid group config field")
        with self._conn() as conn:
            if next_step is None:
                cursor = conn.execute(
                    f"""
                    UPDATE groups SET {step.field} = ?, setup_step = NULL, is_setup_complete = 1
                    WHERE group_id = ? AND setup_step = ?
                    """,
                    (value, group_id, step.value),
                )
            else:
                cursor = conn.execute(
                    f"""
                    UPDATE groups SET {step.field} = ?, setup_step = ?, is_setup_complete = 0
                    WHERE group_id = ? AND setup_step = ?
                    """,
                    (value, next_step.value, group_id, step.value),
                )
            return cursor.rowcount > 0

    def cancel_setup(self, group_id: int) -> bool:
        """Clear the pending step, keeping the group usable if its config is complete."""
        with self._conn() as conn:
            cursor = conn.execute(
                """
                UPDATE groups
                SET setup_step = NULL,
                    is_setup_complete = CASE
                        WHEN bank_name != '' AND account_name != ''
                             AND account_number != '' AND price != '' THEN 1
                        ELSE 0
                    END
                WHERE group_id = ?
                """,
                (group_id,),
            )
            return cursor.rowcount > 0

    def set_group_name(self, group_id: int, group_name: str) -> None:
        with self._conn() as conn:
            conn.execute(
                "UPDATE groups SET group_name = ? WHERE group_id = ?",
                (group_name, group_id),
            )

    def delete_group(self, group_id: int) -> bool:
        with self._conn() as conn:
            cursor = conn.execute("DELETE FROM groups WHERE group_id = ?", (group_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Group %s deleted", group_id)
        return deleted

    # Memberships

    def upsert_membership(
        self,
        group_id: int,
        user_id: int,
        username: str,
        join_ts: int,
        expiry_ts: int,
    ) -> bool:
        """Create or fully overwrite a membership. Returns False if the group is unknown."""
        with self._conn() as conn:
            exists = conn.execute(
                "SELECT 1 FROM groups WHERE group_id = ?",
                (group_id,),
            ).fetchone()
            if not exists:
                return False
            conn.execute(
                """
                INSERT INTO memberships (group_id, user_id, username, join_ts, expiry_ts, is_active)
                VALUES (?, ?, ?, ?, ?, 1)
                ON CONFLICT(group_id, user_id)
                DO UPDATE SET username = excluded.username,
                              join_ts = excluded.join_ts,
                              expiry_ts = excluded.expiry_ts,
                              is_active = 1
                """,
                (group_id, user_id, username, join_ts, expiry_ts),
            )
            return True

    def delete_membership(self, group_id: int, user_id: int) -> bool:
        with self._conn() as conn:
            cursor = conn.execute(
                "DELETE FROM memberships WHERE group_id = ? AND user_id = ?",
                (group_id, user_id),
            )
            return cursor.rowcount > 0

    def get_membership(self, group_id: int, user_id: int) -> Optional[Membership]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM memberships WHERE group_id = ? AND user_id = ?",
                (group_id, user_id),
            ).fetchone()
            return Membership.from_row(dict(row)) if row else None

    def _memberships_conn(self, conn: sqlite3.Connection, group_id: int) -> List[Membership]:
        cursor = conn.execute(
            "SELECT * FROM memberships WHERE group_id = ? ORDER BY expiry_ts, user_id",
            (group_id,),
        )
        return [Membership.from_row(dict(row)) for row in cursor.fetchall()]

    def get_memberships(self, group_id: int) -> List[Membership]:
        with self._conn() as conn:
            return self._memberships_conn(conn, group_id)

    def get_expired_memberships(self, now_ts: int) -> List[ExpiredMembership]:
        with self._conn() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM memberships
                WHERE is_active = 1 AND expiry_ts <= ?
                ORDER BY expiry_ts, group_id, user_id
                """,
                (now_ts,),
            )
            expired = []
            for row in cursor.fetchall():
                membership = Membership.from_row(dict(row))
                expired.append(
                    ExpiredMembership(
                        group_id=membership.group_id,
                        user_id=membership.user_id,
                        membership=membership,
                    )
                )
            return expired

    # Document form

    def export_tree(self) -> Dict[str, Any]:
        """Dump the store as the legacy {"groups": {...}} JSON document."""
        with self._conn() as conn:
            groups: Dict[str, Any] = {}
            for row in conn.execute("SELECT * FROM groups ORDER BY group_id").fetchall():
                group = Group.from_row(dict(row))
                groups[str(group.group_id)] = {
                    "adminId": group.admin_id,
                    "groupName": group.group_name,
                    "config": {
                        LEGACY_CONFIG_KEYS[name]: getattr(group.config, name) for name in CONFIG_FIELDS
                    },
                    "isSetupComplete": group.is_setup_complete,
                    "setupStep": group.raw_setup_step,
                    "createdAt": group.created_at.isoformat() if group.created_at else None,
                    "users": {
                        str(member.user_id): {
                            "username": member.username,
                            "joinDate": member.join_date.isoformat(),
                            "expiryDate": member.expiry_date.isoformat(),
                            "isActive": member.is_active,
                        }
                        for member in self._memberships_conn(conn, group.group_id)
                    },
                }
            return {"groups": groups}

    def import_tree(self, document: Dict[str, Any]) -> Dict[str, int]:
        """Load a legacy JSON document, replacing records with the same ids."""
        groups = document.get("groups")
        if not isinstance(groups, dict):
            raise ValueError("Document has no 'groups' mapping")

        counts = {"groups": 0, "memberships": 0, "skipped": 0}
        with self._conn() as conn:
            for raw_group_id, raw_group in groups.items():
                try:
                    group_id = int(raw_group_id)
                    admin_id = int(raw_group["adminId"])
                except (KeyError, TypeError, ValueError):
                    logger.warning("Skipping malformed group entry: %r", raw_group_id)
                    counts["skipped"] += 1
                    continue

                config = raw_group.get("config") or {}
                step = raw_group.get("setupStep")
                if step == "complete":
                    step = None
                created_at = _parse_iso(raw_group.get("createdAt")) or utcnow()
                conn.execute(
                    """
                    INSERT INTO groups (group_id, admin_id, group_name, bank_name, account_name,
                                        account_number, price, is_setup_complete, setup_step, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(group_id) DO UPDATE SET
                        admin_id = excluded.admin_id,
                        group_name = excluded.group_name,
                        bank_name = excluded.bank_name,
                        account_name = excluded.account_name,
                        account_number = excluded.account_number,
                        price = excluded.price,
                        is_setup_complete = excluded.is_setup_complete,
                        setup_step = excluded.setup_step
                    """,
                    (
                        group_id,
                        admin_id,
                        raw_group.get("groupName") or "",
                        *(str(config.get(LEGACY_CONFIG_KEYS[name]) or "") for name in CONFIG_FIELDS),
                        1 if raw_group.get("isSetupComplete") and not step else 0,
                        step,
                        to_timestamp(created_at),
                    ),
                )
                counts["groups"] += 1

                for raw_user_id, raw_user in (raw_group.get("users") or {}).items():
                    join_date = _parse_iso(raw_user.get("joinDate"))
                    expiry_date = _parse_iso(raw_user.get("expiryDate"))
                    if join_date is None or expiry_date is None or expiry_date <= join_date:
                        logger.warning(
                            "Skipping membership with bad dates: group=%s user=%s",
                            group_id,
                            raw_user_id,
                        )
                        counts["skipped"] += 1
                        continue
                    user_id = int(raw_user_id)
                    conn.execute(
                        """
                        INSERT OR REPLACE INTO memberships
                        (group_id, user_id, username, join_ts, expiry_ts, is_active)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            group_id,
                            user_id,
                            raw_user.get("username") or fallback_username(user_id),
                            to_timestamp(join_date),
                            to_timestamp(expiry_date),
                            1 if raw_user.get("isActive", True) else 0,
                        ),
                    )
                    counts["memberships"] += 1
        logger.info(
            "Imported %s groups and %s memberships (%s skipped)",
            counts["groups"],
            counts["memberships"],
            counts["skipped"],
        )
        return counts

    def health_check(self) -> bool:
        """Check if database is accessible and tables exist"""
        try:
            with self._conn() as conn:
                cursor = conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' AND name IN (?, ?)",
                    ("groups", "memberships"),
                )
                tables_found = {row["name"] for row in cursor.fetchall()}
                return len(tables_found) == 2
        except StoreError as exc:
            logger.error("Database health check failed: %s", exc)
            return False


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return from_timestamp(int(parsed.timestamp()))
