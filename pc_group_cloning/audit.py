"""Audit trail for clone operations."""
from __future__ import annotations

import json
import logging
import math
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, List, Optional, Tuple

from .database import SqliteStore
from .models import UNKNOWN_USER, AuditRecord, utc_now


logger = logging.getLogger(__name__)

_SORT_COLUMNS = {
    "timestamp": "timestamp",
    "username": "username",
    "operation": "operation",
    "sourcecomputer": "source_computer",
    "source_computer": "source_computer",
    "targetcomputer": "target_computer",
    "target_computer": "target_computer",
    "success": "success",
}


@dataclass
class AuditFilters:
    """Filters accepted by :meth:`AuditSink.query`."""

    from_date: Optional[date] = None
    to_date: Optional[date] = None
    username: Optional[str] = None
    operation: Optional[str] = None
    source_computer: Optional[str] = None
    target_computer: Optional[str] = None
    error_message: Optional[str] = None
    success: Optional[bool] = None
    sort_by: str = "timestamp"
    sort_direction: str = "desc"
    page: int = 1
    page_size: int = 25


@dataclass
class AuditPage:
    records: List[AuditRecord] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 25

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0

    def to_dict(self) -> dict:
        return {
            "items": [record.to_dict() for record in self.records],
            "total": self.total,
            "page": self.page,
            "pageSize": self.page_size,
            "totalPages": self.total_pages,
        }


def _day_start(value: date) -> str:
    return datetime.combine(value, time.min, tzinfo=timezone.utc).isoformat()


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class AuditSink:
    """Append-only store of clone attempts.

    Writing is best-effort: :meth:`log_operation` logs and swallows storage
    errors so a broken audit table never fails the operation being audited.
    """

    def __init__(self, store: SqliteStore) -> None:
        self._store = store

    def log_operation(self, record: AuditRecord) -> Optional[int]:
        timestamp = utc_now()
        try:
            row_id = self._store.execute(
                """
                INSERT INTO audit_log (
                    timestamp, username, operation, source_computer, target_computer,
                    groups_cloned, additional_groups, success, error_message, details,
                    source_computer_ou, target_computer_ou
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    timestamp.isoformat(),
                    record.username or UNKNOWN_USER,
                    record.operation,
                    record.source_computer,
                    record.target_computer,
                    json.dumps(list(record.groups_cloned)),
                    json.dumps(list(record.additional_groups)),
                    1 if record.success else 0,
                    record.error_message,
                    record.details or "",
                    record.source_computer_ou,
                    record.target_computer_ou,
                ),
            )
        except sqlite3.Error as exc:
            logger.error("Error logging audit operation: %s", exc)
            return None
        record.id = row_id
        record.timestamp = timestamp
        return row_id

    def get(self, record_id: int) -> Optional[AuditRecord]:
        row = self._store.fetch_one("SELECT * FROM audit_log WHERE id = ?", (record_id,))
        return AuditRecord.from_row(row) if row is not None else None

    def recent(self, count: int = 50) -> List[AuditRecord]:
        rows = self._store.fetch_all(
            "SELECT * FROM audit_log ORDER BY timestamp DESC, id DESC LIMIT ?",
            (max(1, count),),
        )
        return [AuditRecord.from_row(row) for row in rows]

    def by_user(self, username: str, count: int = 50) -> List[AuditRecord]:
        rows = self._store.fetch_all(
            "SELECT * FROM audit_log WHERE username = ? ORDER BY timestamp DESC, id DESC LIMIT ?",
            (username, max(1, count)),
        )
        return [AuditRecord.from_row(row) for row in rows]

    def usernames(self) -> List[str]:
        rows = self._store.fetch_all(
            "SELECT DISTINCT username FROM audit_log WHERE username != '' ORDER BY username"
        )
        return [row["username"] for row in rows]

    def operations(self) -> List[str]:
        rows = self._store.fetch_all(
            "SELECT DISTINCT operation FROM audit_log WHERE operation != '' ORDER BY operation"
        )
        return [row["operation"] for row in rows]

    def query(self, filters: AuditFilters) -> AuditPage:
        where, params = self._where_clause(filters)
        page_size = max(1, min(int(filters.page_size or 25), 500))
        page = max(1, int(filters.page or 1))

        total_row = self._store.fetch_one(f"SELECT COUNT(*) AS total FROM audit_log{where}", params)
        total = int(total_row["total"]) if total_row is not None else 0

        column = _SORT_COLUMNS.get((filters.sort_by or "").lower(), "timestamp")
        direction = "ASC" if (filters.sort_direction or "").lower() == "asc" else "DESC"
        rows = self._store.fetch_all(
            f"SELECT * FROM audit_log{where} ORDER BY {column} {direction}, id {direction} "
            "LIMIT ? OFFSET ?",
            (*params, page_size, (page - 1) * page_size),
        )
        return AuditPage(
            records=[AuditRecord.from_row(row) for row in rows],
            total=total,
            page=page,
            page_size=page_size,
        )

    @staticmethod
    def _where_clause(filters: AuditFilters) -> Tuple[str, Tuple[Any, ...]]:
        clauses: List[str] = []
        params: List[Any] = []

        if filters.from_date:
            clauses.append("timestamp >= ?")
            params.append(_day_start(filters.from_date))
        if filters.to_date:
            # the whole "to" day is included
            clauses.append("timestamp < ?")
            params.append(_day_start(filters.to_date + timedelta(days=1)))
        if filters.username:
            clauses.append("username = ?")
            params.append(filters.username)
        if filters.operation:
            clauses.append("operation = ?")
            params.append(filters.operation)
        if filters.source_computer:
            clauses.append("source_computer LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(filters.source_computer)}%")
        if filters.target_computer:
            clauses.append("target_computer LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(filters.target_computer)}%")
        if filters.error_message:
            clauses.append("error_message IS NOT NULL AND error_message LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(filters.error_message)}%")
        if filters.success is not None:
            clauses.append("success = ?")
            params.append(1 if filters.success else 0)

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, tuple(params)


__all__ = ["AuditFilters", "AuditPage", "AuditSink"]
