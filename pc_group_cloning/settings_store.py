"""Versioned key/value settings with a single current version per key."""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from .database import SqliteStore
from .models import parse_datetime, utc_now


@dataclass(frozen=True)
class SettingsVersion:
    id: int
    key: str
    payload: Dict[str, Any]
    updated_at: Optional[datetime]
    updated_by: str
    is_active: bool


def _row_to_version(row: Any) -> SettingsVersion:
    try:
        payload = json.loads(row["payload"])
    except ValueError:
        payload = {}
    return SettingsVersion(
        id=row["id"],
        key=row["key"],
        payload=payload if isinstance(payload, dict) else {},
        updated_at=parse_datetime(row["updated_at"]),
        updated_by=row["updated_by"] or "",
        is_active=bool(row["is_active"]),
    )


class VersionedSettingsStore:
    """Keeps every version of a setting and an explicit pointer to the current one.

    ``replace`` deactivates the previous versions, inserts the new version and
    moves the pointer in one transaction, so a reader sees either the old or
    the new version and never zero or two.
    """

    def __init__(self, store: SqliteStore) -> None:
        self._store = store

    def current(self, key: str) -> Optional[SettingsVersion]:
        row = self._store.fetch_one(
            """
            SELECT v.* FROM settings_current c
            JOIN settings_versions v ON v.id = c.version_id
            WHERE c.key = ?
            """,
            (key,),
        )
        return _row_to_version(row) if row is not None else None

    def replace(self, key: str, payload: Dict[str, Any], updated_by: str) -> SettingsVersion:
        updated_at = utc_now()
        with self._store.transaction() as conn:
            conn.execute(
                "UPDATE settings_versions SET is_active = 0 WHERE key = ? AND is_active = 1",
                (key,),
            )
            cursor = conn.execute(
                """
                INSERT INTO settings_versions (key, payload, updated_at, updated_by, is_active)
                VALUES (?, ?, ?, ?, 1)
                """,
                (key, json.dumps(payload), updated_at.isoformat(), updated_by or ""),
            )
            version_id = cursor.lastrowid
            conn.execute(
                """
                INSERT INTO settings_current (key, version_id) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET version_id = excluded.version_id
                """,
                (key, version_id),
            )
        return SettingsVersion(
            id=int(version_id or 0),
            key=key,
            payload=dict(payload),
            updated_at=updated_at,
            updated_by=updated_by or "",
            is_active=True,
        )

    def history(self, key: str, limit: int = 50) -> List[SettingsVersion]:
        rows = self._store.fetch_all(
            "SELECT * FROM settings_versions WHERE key = ? ORDER BY id DESC LIMIT ?",
            (key, max(1, int(limit))),
        )
        return [_row_to_version(row) for row in rows]


__all__ = ["SettingsVersion", "VersionedSettingsStore"]
