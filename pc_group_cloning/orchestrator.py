"""The clone workflow: copy group membership and OU placement between computers."""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Iterable, List, Optional, Protocol

from .config import CloneConfig
from .models import (
    UNKNOWN_USER,
    AuditRecord,
    CloneOutcome,
    CloneRequest,
    DirectoryResult,
    dedupe_preserve,
)
from .policies import GroupRemapPolicy, OfficeGroupRemapPolicy


logger = logging.getLogger(__name__)

REMOVAL_FAILED_MESSAGE = "Failed to remove existing groups from target computer - operation stopped"
NO_RETIRED_OU_MESSAGE = "No retired OU configured - source not moved"
SOURCE_KEPT_MESSAGE = "Source computer kept in place"


class OperationCancelled(RuntimeError):
    """Raised by :meth:`OperationContext.check` once the operation must stop."""


class OperationContext:
    """Cancellation flag plus an optional deadline shared with one clone run."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._event = threading.Event()
        self._deadline = clock() + timeout if timeout else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def timed_out(self) -> bool:
        return self._deadline is not None and self._clock() >= self._deadline

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self.timed_out

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def check(self, step: str = "") -> None:
        suffix = f" before {step}" if step else ""
        if self._event.is_set():
            raise OperationCancelled(f"Operation cancelled{suffix}")
        if self.timed_out:
            raise OperationCancelled(f"Operation timed out{suffix}")


class DirectoryOperations(Protocol):
    def get_computer_groups(self, computer_name: str) -> List[str]:
        ...

    def add_computer_to_group(self, computer_name: str, group_name: str) -> DirectoryResult:
        ...

    def remove_computer_from_group(self, computer_name: str, group_name: str) -> DirectoryResult:
        ...

    def move_computer_to_ou(self, computer_name: str, target_ou: str) -> DirectoryResult:
        ...


class RetiredOUSource(Protocol):
    def get_retired_ou(self) -> Optional[str]:
        ...


class AuditWriter(Protocol):
    def log_operation(self, record: AuditRecord) -> Optional[int]:
        ...


class CloneOrchestrator:
    """Runs one clone request against the directory, strictly in order.

    1. snapshot the target's groups and drop the system groups
    2. remove the rest, stopping at the first failure
    3. remap and dedupe the requested groups
    4. add each group independently
    5. move the target into the source's OU when one was supplied
    6. move the source to the retired OU unless it is kept in place

    Exactly one audit record is written per call, whatever the outcome.
    """

    def __init__(
        self,
        directory: DirectoryOperations,
        ou_store: RetiredOUSource,
        audit_sink: AuditWriter,
        policy: Optional[GroupRemapPolicy] = None,
        config: Optional[CloneConfig] = None,
    ) -> None:
        self.directory = directory
        self.ou_store = ou_store
        self.audit_sink = audit_sink
        self.config = config or CloneConfig()
        self.policy = policy or OfficeGroupRemapPolicy.from_config(self.config)

    def execute(
        self,
        request: CloneRequest,
        username: Optional[str] = None,
        context: Optional[OperationContext] = None,
    ) -> CloneOutcome:
        context = context or OperationContext()
        outcome = CloneOutcome()

        if request.source_computer.lower() == request.target_computer.lower():
            logger.warning(
                "Source and target are the same computer (%s); continuing", request.target_computer
            )
        logger.info(
            "Starting clone operation: %s -> %s", request.source_computer, request.target_computer
        )

        try:
            self._run(request, outcome, context)
        except OperationCancelled as exc:
            logger.warning("Clone %s -> %s stopped: %s", request.source_computer, request.target_computer, exc)
            outcome.cancelled = True
            outcome.add_error(str(exc))
        except Exception as exc:
            logger.exception("Clone operation failed with exception")
            self._mark_fatal(outcome, exc)

        if not outcome.details:
            outcome.details = self._summary(outcome)
        self._write_audit(request, outcome, username or UNKNOWN_USER)
        return outcome

    def record_failure(
        self, request: CloneRequest, exc: Exception, username: Optional[str] = None
    ) -> CloneOutcome:
        """Audit a run that failed before the workflow could start."""

        logger.error(
            "Clone operation %s -> %s could not start: %s",
            request.source_computer,
            request.target_computer,
            exc,
        )
        outcome = CloneOutcome()
        self._mark_fatal(outcome, exc)
        self._write_audit(request, outcome, username or UNKNOWN_USER)
        return outcome

    @staticmethod
    def _mark_fatal(outcome: CloneOutcome, exc: Exception) -> None:
        outcome.fatal = True
        outcome.add_error(str(exc) or exc.__class__.__name__)
        outcome.details = "Operation failed with exception"

    # Workflow ------------------------------------------------------------
    def _run(self, request: CloneRequest, outcome: CloneOutcome, context: OperationContext) -> None:
        target = request.target_computer

        context.check("reading target groups")
        current = self.directory.get_computer_groups(target)
        system_groups = set(self.config.system_groups)
        groups_to_remove = [group for group in current if group not in system_groups]
        logger.info("Target computer %s currently has %d groups", target, len(current))

        if groups_to_remove:
            if not self._remove_groups(target, groups_to_remove, outcome, context):
                return
        else:
            logger.info("No non-system groups to remove from target computer %s", target)
            outcome.operations.append("No existing groups to remove")

        groups_to_add = self.resolve_groups(request)
        self._add_groups(target, groups_to_add, outcome, context)

        if request.source_computer_ou:
            self._move_target(target, request.source_computer_ou, outcome, context)

        if request.keep_source_in_place:
            outcome.operations.append(SOURCE_KEPT_MESSAGE)
        else:
            self._retire_source(request.source_computer, outcome, context)

    def resolve_groups(self, request: CloneRequest) -> List[str]:
        """Requested groups after remapping, deduplicated in first-seen order."""

        requested = list(request.selected_groups) + list(request.additional_groups)
        return dedupe_preserve(self.policy.remap(requested, request.target_computer))

    def _remove_groups(
        self,
        target: str,
        groups: Iterable[str],
        outcome: CloneOutcome,
        context: OperationContext,
    ) -> bool:
        groups = list(groups)
        logger.info(
            "Removing %d non-system groups from target computer %s: %s",
            len(groups),
            target,
            ", ".join(groups),
        )
        for group in groups:
            context.check(f"removing {group}")
            result = self.directory.remove_computer_from_group(target, group)
            if not result:
                logger.error(
                    "Failed to remove %s from group %s (%s); stopping",
                    target,
                    group,
                    result.status.value,
                )
                if outcome.groups_removed:
                    outcome.operations.append(f"Removed {outcome.groups_removed} existing groups")
                outcome.add_error(REMOVAL_FAILED_MESSAGE)
                outcome.aborted = True
                outcome.details = "Group removal failed"
                return False
            outcome.groups_removed += 1
        outcome.operations.append(f"Removed {outcome.groups_removed} existing groups")
        return True

    def _add_groups(
        self,
        target: str,
        groups: List[str],
        outcome: CloneOutcome,
        context: OperationContext,
    ) -> None:
        logger.info("Adding %d groups to target computer %s: %s", len(groups), target, ", ".join(groups))
        for group in groups:
            context.check(f"adding {group}")
            result = self.directory.add_computer_to_group(target, group)
            if result:
                outcome.success_count += 1
                logger.info(
                    "Added %s to group %s (%d/%d)", target, group, outcome.success_count, len(groups)
                )
            else:
                outcome.add_error(f"Failed to add to group: {group}")
                logger.error("Failed to add %s to group %s (%s)", target, group, result.status.value)
        if groups:
            outcome.operations.append(f"Added {outcome.success_count} of {len(groups)} groups")

    def _move_target(
        self, target: str, ou: str, outcome: CloneOutcome, context: OperationContext
    ) -> None:
        context.check("moving target computer")
        logger.info("Moving target computer %s to same OU as source: %s", target, ou)
        if self.directory.move_computer_to_ou(target, ou):
            outcome.operations.append("Moved to source OU")
            outcome.target_moved_to = ou
        else:
            outcome.add_error("Failed to move computer to source OU")
            logger.error("Failed to move %s to OU %s", target, ou)

    def _retire_source(self, source: str, outcome: CloneOutcome, context: OperationContext) -> None:
        retired_ou = self.ou_store.get_retired_ou()
        if not retired_ou:
            logger.info("No retired computers OU configured; %s left in place", source)
            outcome.operations.append(NO_RETIRED_OU_MESSAGE)
            return

        context.check("moving source computer")
        logger.info("Moving source computer %s to retired OU %s", source, retired_ou)
        if self.directory.move_computer_to_ou(source, retired_ou):
            outcome.operations.append("Moved source computer to retired OU")
        else:
            outcome.add_error("Failed to move source computer to retired OU")
            logger.error("Failed to move %s to retired OU %s", source, retired_ou)

    # Finalize ------------------------------------------------------------
    @staticmethod
    def _summary(outcome: CloneOutcome) -> str:
        summary = (
            f"Operations: {', '.join(outcome.operations)}. "
            f"Success: {outcome.success_count}, Errors: {outcome.error_count}. "
            f"Groups removed: {outcome.groups_removed}"
        )
        if outcome.cancelled:
            summary = f"Cancelled. {summary}"
        return summary

    def _write_audit(self, request: CloneRequest, outcome: CloneOutcome, username: str) -> None:
        record = AuditRecord(
            operation=self.config.operation_label,
            source_computer=request.source_computer,
            target_computer=request.target_computer,
            groups_cloned=list(request.selected_groups),
            additional_groups=list(request.additional_groups),
            success=outcome.success,
            error_message="; ".join(outcome.errors) if outcome.errors else None,
            details=outcome.details,
            username=username,
            source_computer_ou=request.source_computer_ou or None,
            target_computer_ou=outcome.target_moved_to,
        )
        try:
            record_id = self.audit_sink.log_operation(record)
        except Exception:
            # the clone outcome is reported regardless
            logger.exception(
                "Failed to write audit record for %s -> %s",
                request.source_computer,
                request.target_computer,
            )
            return
        if record_id is None:
            logger.warning(
                "Audit record for %s -> %s was not stored",
                request.source_computer,
                request.target_computer,
            )


__all__ = [
    "CloneOrchestrator",
    "DirectoryOperations",
    "OperationCancelled",
    "OperationContext",
]
