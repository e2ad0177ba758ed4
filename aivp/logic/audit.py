"""
Audit Logic Layer for the AIVP research core.
Append-only compliance trail of consent lifecycle attempts, successful or not.
"""

import logging
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.orm import Session

from aivp.data.database_factory import database_transaction
from aivp.data.models import AuditLogEntry
from aivp.data.repositories import AuditLogRepository
from aivp.data.schemas import AuditAction
from aivp.exceptions import AIVPError
from aivp.utils.clock import Clock

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]


@dataclass
class AuditSummary:
    """Summary of audit activity for one participant."""

    total_entries: int
    successes: int
    failures: int
    actions_breakdown: dict[str, int]


class AuditLog:
    """
    Append-only sink for consent lifecycle events.

    Successful transitions are recorded inside the caller's transaction so the
    entry commits together with the state change. Failures are recorded in a
    transaction of their own, because the caller's transaction is being rolled
    back.
    """

    def __init__(self, session_factory: SessionFactory = database_transaction, clock: Clock | None = None):
        self.session_factory = session_factory
        self.clock = clock or Clock()

    def record_success(
        self,
        session: Session,
        participant_id: str,
        action: AuditAction,
        details: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        """
        Record a successful transition within an open transaction.

        Args:
            session: Transaction the transition is being written in
            participant_id: Participant the transition applies to
            action: Transition that succeeded
            details: Structured context such as the withdrawal reason

        Returns:
            AuditLogEntry: Pending entry, committed with the caller's transaction
        """
        return AuditLogRepository(session).append(
            participant_id=participant_id,
            action=action.value,
            success=True,
            timestamp=self.clock.now(),
            details=details or {},
        )

    def record_failure(
        self,
        participant_id: str,
        action: AuditAction,
        error: BaseException,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """
        Record a failed transition attempt in its own transaction.

        Returns:
            bool: True if the entry was persisted. A failure to persist is
            logged at ERROR; the caller still re-raises the original error.
        """
        failure_details = dict(details or {})
        failure_details["error_type"] = type(error).__name__
        if isinstance(error, AIVPError):
            failure_details["error_code"] = error.error_code
            failure_details["retryable"] = error.retryable
            failure_details["error_details"] = error.details

        try:
            with self.session_factory() as session:
                AuditLogRepository(session).append(
                    participant_id=participant_id,
                    action=action.value,
                    success=False,
                    timestamp=self.clock.now(),
                    details=failure_details,
                    error_message=str(error),
                )
            return True
        except Exception as audit_error:
            logger.error(
                f"Could not persist audit failure entry for {action.value}: {audit_error} "
                f"(original error: {error})",
                exc_info=True,
            )
            return False

    def entries_for(self, participant_id: str) -> list[AuditLogEntry]:
        """Get all audit entries for a participant in chronological order."""
        with self.session_factory() as session:
            return AuditLogRepository(session).get_by_participant(participant_id)

    def summarize(self, participant_id: str) -> AuditSummary:
        """Summarize audit activity for a participant."""
        entries = self.entries_for(participant_id)
        breakdown: dict[str, int] = {}
        for entry in entries:
            breakdown[entry.action] = breakdown.get(entry.action, 0) + 1
        successes = sum(1 for entry in entries if entry.success)
        return AuditSummary(
            total_entries=len(entries),
            successes=successes,
            failures=len(entries) - successes,
            actions_breakdown=breakdown,
        )
