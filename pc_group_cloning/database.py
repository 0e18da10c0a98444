"""SQLite access layer for audit records and versioned settings."""
from __future__ import annotations

import contextlib
import sqlite3
import threading
from pathlib import Path
from typing import Iterator, List, Mapping, Optional, Sequence, Union

_SqlValue = Union[str, bytes, int, float, None]
_SqlParams = Union[Sequence[_SqlValue], Mapping[str, _SqlValue]]

MEMORY_DATABASE = ":memory:"


class SqliteStore:
    """Single shared connection guarded by a lock.

    The connection runs in autocommit mode; multi-statement writes go through
    :meth:`transaction`, which holds the lock and an IMMEDIATE transaction so
    readers on this store (or other processes) never observe half of it.
    """

    def __init__(self, path: Union[str, Path], wal: bool = True) -> None:
        target = str(path)
        if target != MEMORY_DATABASE:
            Path(target).parent.mkdir(parents=True, exist_ok=True)
        self.path = target
        self._conn = sqlite3.connect(target, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._closed = False
        if wal and target != MEMORY_DATABASE:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    username TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    source_computer TEXT NOT NULL,
                    target_computer TEXT NOT NULL,
                    groups_cloned TEXT NOT NULL DEFAULT '[]',
                    additional_groups TEXT NOT NULL DEFAULT '[]',
                    success INTEGER NOT NULL,
                    error_message TEXT,
                    details TEXT NOT NULL DEFAULT '',
                    source_computer_ou TEXT,
                    target_computer_ou TEXT
                );

                CREATE TABLE IF NOT EXISTS settings_versions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    key TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    updated_by TEXT NOT NULL DEFAULT '',
                    is_active INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS settings_current (
                    key TEXT PRIMARY KEY,
                    version_id INTEGER NOT NULL,
                    FOREIGN KEY(version_id) REFERENCES settings_versions(id)
                );

                CREATE INDEX IF NOT EXISTS idx_audit_log_timestamp ON audit_log(timestamp);
                CREATE INDEX IF NOT EXISTS idx_audit_log_username ON audit_log(username);
                CREATE INDEX IF NOT EXISTS idx_settings_versions_key ON settings_versions(key, id);
                """
            )

    def execute(self, query: str, params: _SqlParams = ()) -> int:
        """Run a single write statement, returning the last inserted row id."""

        with self._lock:
            cursor = self._conn.execute(query, params)
            return cursor.lastrowid or 0

    def fetch_one(self, query: str, params: _SqlParams = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            cursor = self._conn.execute(query, params)
            return cursor.fetchone()

    def fetch_all(self, query: str, params: _SqlParams = ()) -> List[sqlite3.Row]:
        with self._lock:
            cursor = self._conn.execute(query, params)
            return cursor.fetchall()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield the connection inside ``BEGIN IMMEDIATE``; commit or roll back on exit."""

        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True


__all__ = ["MEMORY_DATABASE", "SqliteStore"]
