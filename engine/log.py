"""Append-only execution log: audit trail and idempotency ledger."""

import logging
from datetime import datetime
from typing import Any, Dict, List

from db import AutomationRepository
from models import Enrollment, LogEntry, Step, StepExecutionStatus

logger = logging.getLogger(__name__)


class ExecutionLog:
    def __init__(self, repository: AutomationRepository) -> None:
        self._repository = repository

    def append(self, entry: LogEntry) -> LogEntry:
        self._repository.append_log(entry)
        logger.debug(
            "Logged %s attempt %d of step %s for enrollment %s",
            entry.status.value,
            entry.attempt,
            entry.step_id,
            entry.enrollment_id,
        )
        return entry

    def has_completed(self, enrollment_id: str, step_id: str) -> bool:
        """True once the step's side effect is recorded as done for this enrollment."""
        return bool(
            self._repository.query_logs(
                enrollment_id=enrollment_id, step_id=step_id, status=StepExecutionStatus.COMPLETED, limit=1
            )
        )

    def failed_attempts(self, enrollment_id: str, step_id: str) -> int:
        return len(
            self._repository.query_logs(
                enrollment_id=enrollment_id, step_id=step_id, status=StepExecutionStatus.FAILED
            )
        )

    def for_automation(self, automation_id: str, contact_id: str | None = None, limit: int = 100) -> List[LogEntry]:
        return self._repository.query_logs(automation_id=automation_id, contact_id=contact_id, limit=limit)

    def for_enrollment(self, enrollment_id: str, limit: int | None = None) -> List[LogEntry]:
        return self._repository.query_logs(enrollment_id=enrollment_id, limit=limit)

    def for_contact(self, contact_id: str, limit: int = 100) -> List[LogEntry]:
        return self._repository.query_logs(contact_id=contact_id, limit=limit)


def build_entry(
    enrollment: Enrollment,
    step: Step,
    status: StepExecutionStatus,
    executed_at: datetime,
    attempt: int = 1,
    input: Dict[str, Any] | None = None,
    output: Dict[str, Any] | None = None,
    error: str | None = None,
) -> LogEntry:
    return LogEntry(
        automation_id=enrollment.automation_id,
        enrollment_id=enrollment.id,
        contact_id=enrollment.contact_id,
        step_id=step.id,
        step_type=step.type,
        status=status,
        attempt=attempt,
        input=input,
        output=output,
        error=error,
        executed_at=executed_at,
    )
