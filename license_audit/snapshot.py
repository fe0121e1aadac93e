"""Local sqlite snapshot of group memberships with one extension attribute."""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .classifier import GroupNameCache


logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS group_memberships (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    user_principal_name TEXT,
    display_name TEXT,
    group_id TEXT NOT NULL,
    group_name TEXT,
    extension_value TEXT,
    recorded_at TEXT NOT NULL
)
"""
UNIQUE_BY_GROUP_NAME = "ux_memberships_user_group"
UNIQUE_BY_USER_NAME = "ux_memberships_user"
UNIQUE_BY_GROUP = (
    f"CREATE UNIQUE INDEX IF NOT EXISTS {UNIQUE_BY_GROUP_NAME} "
    "ON group_memberships (user_id, group_id)"
)
UNIQUE_BY_USER = (
    f"CREATE UNIQUE INDEX IF NOT EXISTS {UNIQUE_BY_USER_NAME} "
    "ON group_memberships (user_id)"
)


class SnapshotModeError(RuntimeError):
    """Raised when a database is opened in a storage mode other than the one it was created with."""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _mode_name(key_by_group: bool) -> str:
    return "one row per user and group" if key_by_group else "one row per user"


class InsertOutcome(Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    CAPPED = "capped"


@dataclass(frozen=True)
class Membership:
    user_id: str
    group_id: str
    user_principal_name: str = ""
    display_name: str = ""
    group_name: str = ""
    extension_value: Optional[str] = None


@dataclass
class IngestStats:
    group_id: str
    group_name: str = ""
    members: int = 0
    inserted: int = 0
    duplicates: int = 0
    capped: int = 0
    errors: int = 0


class MembershipStore:
    """Append-only membership table with insert-if-absent semantics.

    With ``key_by_group`` a user may appear once per group, up to
    ``max_rows_per_user`` rows in total; otherwise a user appears once.
    A database keeps the mode it was created with; pass ``key_by_group=None``
    to open it in that mode.
    """

    def __init__(
        self,
        path: Path,
        key_by_group: Optional[bool] = True,
        max_rows_per_user: Optional[int] = 2,
    ) -> None:
        self.path = Path(path)
        if str(path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(str(path))
        self._connection.row_factory = sqlite3.Row
        with self._connection:
            self._connection.execute(SCHEMA)

        # None adopts whatever mode the database was created with
        existing = self.stored_mode()
        if key_by_group is None:
            key_by_group = True if existing is None else existing
        elif existing is not None and existing != key_by_group:
            self._connection.close()
            raise SnapshotModeError(
                f"Snapshot database '{self.path}' keeps {_mode_name(existing)}; "
                f"it cannot be opened to keep {_mode_name(key_by_group)}."
            )

        self.key_by_group = key_by_group
        self.max_rows_per_user = max_rows_per_user if key_by_group else 1
        with self._connection:
            self._connection.execute(UNIQUE_BY_GROUP if key_by_group else UNIQUE_BY_USER)

    def stored_mode(self) -> Optional[bool]:
        """``True`` when keyed by (user, group), ``False`` when keyed by user, ``None`` when new."""

        names = {
            row["name"]
            for row in self._connection.execute("PRAGMA index_list(group_memberships)")
        }
        if UNIQUE_BY_USER_NAME in names:
            return False
        if UNIQUE_BY_GROUP_NAME in names:
            return True
        return None

    def close(self) -> None:
        self._connection.close()

    def __enter__(self) -> "MembershipStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def count_for_user(self, user_id: str) -> int:
        row = self._connection.execute(
            "SELECT COUNT(*) FROM group_memberships WHERE user_id = ?", (user_id,)
        ).fetchone()
        return int(row[0])

    def record(self, membership: Membership) -> InsertOutcome:
        if self.max_rows_per_user is not None and self.key_by_group:
            exists = self._connection.execute(
                "SELECT 1 FROM group_memberships WHERE user_id = ? AND group_id = ?",
                (membership.user_id, membership.group_id),
            ).fetchone()
            if exists:
                return InsertOutcome.DUPLICATE
            if self.count_for_user(membership.user_id) >= self.max_rows_per_user:
                return InsertOutcome.CAPPED

        with self._connection:
            cursor = self._connection.execute(
                "INSERT OR IGNORE INTO group_memberships "
                "(user_id, user_principal_name, display_name, group_id, group_name, "
                "extension_value, recorded_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    membership.user_id,
                    membership.user_principal_name,
                    membership.display_name,
                    membership.group_id,
                    membership.group_name,
                    membership.extension_value,
                    _utc_now(),
                ),
            )
        if cursor.rowcount == 0:
            return InsertOutcome.DUPLICATE
        return InsertOutcome.INSERTED

    def rows(self) -> List[Dict[str, Any]]:
        cursor = self._connection.execute(
            "SELECT user_id, user_principal_name, display_name, group_id, group_name, "
            "extension_value, recorded_at FROM group_memberships ORDER BY id"
        )
        return [dict(row) for row in cursor.fetchall()]


def ingest_group(
    directory: Any,
    store: MembershipStore,
    group_id: str,
    attribute_name: Optional[str] = None,
    group_cache: Optional[GroupNameCache] = None,
) -> IngestStats:
    """Copy the members of ``group_id`` into ``store``.

    Fetching the member list is a setup step and propagates errors. A failed
    extension lookup is counted and stored as an empty value.
    """

    cache = group_cache or GroupNameCache(directory.get_group)
    stats = IngestStats(group_id=group_id, group_name=cache.resolve(group_id))
    members = directory.list_group_members(group_id)
    stats.members = len(members)
    logger.info("Group %s (%s) has %s user members", stats.group_name, group_id, len(members))

    for member in members:
        user_id = str(member.get("id") or "").strip()
        if not user_id:
            continue

        value: Optional[str] = None
        if attribute_name:
            try:
                value = directory.get_user_extension_attribute(user_id, attribute_name)
            except Exception as exc:
                logger.warning("Unable to read %s for %s: %s", attribute_name, user_id, exc)
                stats.errors += 1

        outcome = store.record(
            Membership(
                user_id=user_id,
                group_id=group_id,
                user_principal_name=str(member.get("userPrincipalName") or ""),
                display_name=str(member.get("displayName") or ""),
                group_name=stats.group_name,
                extension_value=value,
            )
        )
        if outcome is InsertOutcome.INSERTED:
            stats.inserted += 1
        elif outcome is InsertOutcome.CAPPED:
            stats.capped += 1
        else:
            stats.duplicates += 1
    return stats


__all__ = [
    "IngestStats",
    "InsertOutcome",
    "Membership",
    "MembershipStore",
    "SnapshotModeError",
    "ingest_group",
]
