"""Data models for clone requests, outcomes and stored records."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


UNKNOWN_USER = "Unknown"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _clean_names(values: Optional[Iterable[Any]]) -> List[str]:
    cleaned: List[str] = []
    if not isinstance(values, (list, tuple)):
        return cleaned
    for value in values:
        text = str(value or "").strip()
        if text:
            cleaned.append(text)
    return cleaned


def qualify_username(domain: str, username: str) -> str:
    """Return ``DOMAIN\\user`` unless the name is already qualified."""

    if not domain or "\\" in username:
        return username
    return f"{domain}\\{username}"


def dedupe_preserve(values: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    result: List[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


@dataclass
class CloneRequest:
    """Caller-supplied description of a clone run."""

    source_computer: str
    target_computer: str
    selected_groups: List[str] = field(default_factory=list)
    additional_groups: List[str] = field(default_factory=list)
    source_computer_ou: str = ""
    keep_source_in_place: bool = False
    malformed_fields: List[str] = field(default_factory=list, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CloneRequest":
        """Build a request from the JSON body accepted by ``/api/clone/execute``."""

        selected = data.get("selectedGroups", data.get("selected_groups"))
        additional = data.get("additionalGroups", data.get("additional_groups"))
        malformed = [
            name
            for name, value in (("selectedGroups", selected), ("additionalGroups", additional))
            if value is not None and not isinstance(value, (list, tuple))
        ]
        keep = data.get("keepSourceInPlace", data.get("keep_source_in_place", False))
        if isinstance(keep, str):
            keep = keep.strip().lower() in {"1", "true", "yes", "on"}
        return cls(
            source_computer=str(data.get("sourceComputer") or data.get("source_computer") or "").strip(),
            target_computer=str(data.get("targetComputer") or data.get("target_computer") or "").strip(),
            selected_groups=_clean_names(selected),
            additional_groups=_clean_names(additional),
            source_computer_ou=str(
                data.get("sourceComputerOU") or data.get("source_computer_ou") or ""
            ).strip(),
            keep_source_in_place=bool(keep),
            malformed_fields=malformed,
        )

    def validation_errors(self) -> List[str]:
        errors: List[str] = []
        if not self.source_computer:
            errors.append("Source computer is required.")
        if not self.target_computer:
            errors.append("Target computer is required.")
        if (
            self.source_computer
            and self.target_computer
            and self.source_computer.lower() == self.target_computer.lower()
        ):
            errors.append("Source and target computer must be different.")
        for name in self.malformed_fields:
            errors.append(f"{name} must be a list of group names.")
        return errors


@dataclass
class CloneOutcome:
    """Terminal result of one clone run."""

    success_count: int = 0
    error_count: int = 0
    errors: List[str] = field(default_factory=list)
    operations: List[str] = field(default_factory=list)
    groups_removed: int = 0
    target_moved_to: Optional[str] = None
    details: str = ""
    fatal: bool = False
    cancelled: bool = False
    aborted: bool = False

    @property
    def success(self) -> bool:
        return self.error_count == 0

    def add_error(self, message: str) -> None:
        self.error_count += 1
        self.errors.append(message)

    @property
    def message(self) -> str:
        if self.fatal:
            return "Clone operation failed"
        if self.cancelled:
            return "Clone operation was cancelled before it completed"
        if self.aborted:
            return "Operation failed during group removal"
        if self.success:
            return f"Successfully completed clone operation! Added {self.success_count} groups."
        return (
            f"Clone completed with {self.success_count} successes and {self.error_count} errors"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "errors": list(self.errors),
            "operations": list(self.operations),
            "message": self.message,
        }


@dataclass
class AuditRecord:
    """One persisted clone attempt."""

    operation: str
    source_computer: str
    target_computer: str
    groups_cloned: List[str] = field(default_factory=list)
    additional_groups: List[str] = field(default_factory=list)
    success: bool = False
    error_message: Optional[str] = None
    details: str = ""
    username: str = UNKNOWN_USER
    timestamp: Optional[datetime] = None
    source_computer_ou: Optional[str] = None
    target_computer_ou: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "username": self.username,
            "operation": self.operation,
            "sourceComputer": self.source_computer,
            "targetComputer": self.target_computer,
            "groupsCloned": list(self.groups_cloned),
            "additionalGroups": list(self.additional_groups),
            "success": self.success,
            "errorMessage": self.error_message,
            "details": self.details,
            "sourceComputerOU": self.source_computer_ou,
            "targetComputerOU": self.target_computer_ou,
        }

    @classmethod
    def from_row(cls, row: Any) -> "AuditRecord":
        return cls(
            id=row["id"],
            timestamp=parse_datetime(row["timestamp"]),
            username=row["username"],
            operation=row["operation"],
            source_computer=row["source_computer"],
            target_computer=row["target_computer"],
            groups_cloned=_load_list(row["groups_cloned"]),
            additional_groups=_load_list(row["additional_groups"]),
            success=bool(row["success"]),
            error_message=row["error_message"],
            details=row["details"] or "",
            source_computer_ou=row["source_computer_ou"],
            target_computer_ou=row["target_computer_ou"],
        )


def _load_list(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        payload = json.loads(raw)
    except ValueError:
        return [part.strip() for part in raw.split(",") if part.strip()]
    if isinstance(payload, list):
        return [str(entry) for entry in payload]
    return []


@dataclass
class ServiceIdentity:
    """Stored service account used for directory operations."""

    domain: str
    username: str
    encrypted_secret: str
    last_updated: Optional[datetime] = None
    updated_by: str = ""
    is_active: bool = True
    version: Optional[int] = None

    @property
    def qualified_username(self) -> str:
        return qualify_username(self.domain, self.username)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "username": self.username,
            "encrypted_secret": self.encrypted_secret,
        }

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "username": self.username,
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
            "updatedBy": self.updated_by,
        }


@dataclass
class RetiredOUConfig:
    retired_computers_ou: str
    last_updated: Optional[datetime] = None
    updated_by: str = ""
    is_active: bool = True
    version: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "retiredComputersOU": self.retired_computers_ou,
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
            "updatedBy": self.updated_by,
            "isActive": self.is_active,
        }


@dataclass(frozen=True)
class ServiceCredentials:
    """Decrypted credentials handed to the directory client. Never persisted."""

    username: str
    password: str

    def __repr__(self) -> str:
        return f"ServiceCredentials(username={self.username!r}, password='***')"


class ResultStatus(str, Enum):
    SUCCESS = "success"
    ALREADY_SATISFIED = "already_satisfied"
    NOT_FOUND = "not_found"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class DirectoryResult:
    """Outcome of a single directory mutation."""

    status: ResultStatus
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (ResultStatus.SUCCESS, ResultStatus.ALREADY_SATISFIED)

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def succeeded(cls, message: str = "") -> "DirectoryResult":
        return cls(ResultStatus.SUCCESS, message)

    @classmethod
    def already_satisfied(cls, message: str = "") -> "DirectoryResult":
        return cls(ResultStatus.ALREADY_SATISFIED, message)

    @classmethod
    def not_found(cls, message: str = "") -> "DirectoryResult":
        return cls(ResultStatus.NOT_FOUND, message)

    @classmethod
    def transient(cls, message: str = "") -> "DirectoryResult":
        return cls(ResultStatus.TRANSIENT_FAILURE, message)

    @classmethod
    def permanent(cls, message: str = "") -> "DirectoryResult":
        return cls(ResultStatus.PERMANENT_FAILURE, message)


@dataclass(frozen=True)
class ComputerDetails:
    ou: str = ""
    ou_description: str = ""
    computer_description: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "ou": self.ou,
            "ouDescription": self.ou_description,
            "computerDescription": self.computer_description,
        }


__all__ = [
    "AuditRecord",
    "CloneOutcome",
    "CloneRequest",
    "ComputerDetails",
    "DirectoryResult",
    "ResultStatus",
    "RetiredOUConfig",
    "ServiceCredentials",
    "ServiceIdentity",
    "UNKNOWN_USER",
    "dedupe_preserve",
    "parse_datetime",
    "utc_now",
]
