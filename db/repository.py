import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List

from errors import LeaseError, NotFoundError
from models import (
    Automation,
    AutomationStatus,
    Enrollment,
    EnrollmentStatus,
    LogEntry,
    Step,
    StepExecutionStatus,
    TriggerType,
    utcnow,
)

UPDATABLE_AUTOMATION_FIELDS = frozenset(
    {"name", "description", "trigger_config", "status", "start_step_id", "updated_at"}
)


def check_automation_changes(changes: Dict[str, Any]) -> None:
    rejected = set(changes) - UPDATABLE_AUTOMATION_FIELDS
    if rejected:
        raise ValueError(f"Automation fields cannot be written directly: {', '.join(sorted(rejected))}")


class AutomationRepository(ABC):
    """
    Abstract persistence boundary. Implementations are responsible for
    durability, conflicts, and connectivity. This layer treats the DB as a
    black box.

    Enrollment writes made by the scheduler go through `commit_transition`,
    which stores the new enrollment state and its log entries atomically and
    only while the caller still holds the enrollment's lease.
    """

    # Automations

    @abstractmethod
    def save(self, automation: Automation) -> str:
        """Insert or replace the automation and return its identifier."""
        raise NotImplementedError

    @abstractmethod
    def get(self, record_id: str) -> Automation | None:
        """Fetch an automation by id, or None if missing."""
        raise NotImplementedError

    @abstractmethod
    def list_automations(
        self,
        event_id: str | None = None,
        status: AutomationStatus | None = None,
        trigger_type: TriggerType | None = None,
    ) -> List[Automation]:
        """Automations matching every given filter, newest first."""
        raise NotImplementedError

    @abstractmethod
    def delete(self, record_id: str) -> None:
        """Delete the automation with its steps and enrollments. Log entries are kept."""
        raise NotImplementedError

    @abstractmethod
    def update_automation(
        self, automation_id: str, changes: Dict[str, Any], bump_version: bool = False
    ) -> Automation:
        """
        Write only the given columns of an existing automation and return it.

        Counters and version are owned by the repository and cannot be set
        here; `bump_version` increments the version in the same write.
        """
        raise NotImplementedError

    # Steps

    @abstractmethod
    def save_step(self, step: Step) -> str:
        """Insert or replace a step and bump its automation's version."""
        raise NotImplementedError

    @abstractmethod
    def get_step(self, step_id: str) -> Step | None:
        raise NotImplementedError

    @abstractmethod
    def list_steps(self, automation_id: str) -> List[Step]:
        """Steps of one automation ordered by position."""
        raise NotImplementedError

    @abstractmethod
    def delete_step(self, step_id: str) -> None:
        """Delete a step and bump its automation's version."""
        raise NotImplementedError

    # Enrollments

    @abstractmethod
    def create_enrollment(self, enrollment: Enrollment) -> Enrollment | None:
        """Insert unless the (automation, contact) pair is already enrolled.

        Returns None when an enrollment already exists. Increments the
        automation's enrollment_count in the same transaction.
        """
        raise NotImplementedError

    @abstractmethod
    def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        raise NotImplementedError

    @abstractmethod
    def list_enrollments(
        self, automation_id: str | None = None, contact_id: str | None = None
    ) -> List[Enrollment]:
        """Enrollments matching the filters, most recently started first."""
        raise NotImplementedError

    @abstractmethod
    def find_runnable(self, now: datetime, limit: int) -> List[str]:
        """Ids of active, unleased enrollments of active automations that are due at `now`."""
        raise NotImplementedError

    @abstractmethod
    def claim(self, enrollment_id: str, owner: str, now: datetime, ttl: timedelta) -> Enrollment | None:
        """Take the enrollment's lease. Returns None when another owner holds an unexpired lease
        or the enrollment is no longer active."""
        raise NotImplementedError

    @abstractmethod
    def release(self, enrollment_id: str, owner: str) -> None:
        """Drop the lease if `owner` still holds it."""
        raise NotImplementedError

    @abstractmethod
    def commit_transition(
        self, enrollment: Enrollment, owner: str, entries: Iterable[LogEntry] = ()
    ) -> Enrollment:
        """Persist the enrollment's new state with its log entries and release the lease.

        Increments the automation's completed_count when the enrollment
        moves to completed. Raises LeaseError if `owner` lost the lease.
        """
        raise NotImplementedError

    # Execution log

    @abstractmethod
    def append_log(self, entry: LogEntry) -> None:
        raise NotImplementedError

    @abstractmethod
    def query_logs(
        self,
        automation_id: str | None = None,
        enrollment_id: str | None = None,
        contact_id: str | None = None,
        step_id: str | None = None,
        status: StepExecutionStatus | None = None,
        limit: int | None = None,
    ) -> List[LogEntry]:
        """Log entries matching every given filter, newest first."""
        raise NotImplementedError


class InMemoryAutomationRepository(AutomationRepository):
    """
    Minimal in-memory implementation for local testing. Not intended for prod.
    A single lock stands in for database transactions.
    """

    def __init__(self) -> None:
        self._automations: Dict[str, Automation] = {}
        self._steps: Dict[str, Step] = {}
        self._enrollments: Dict[str, Enrollment] = {}
        self._logs: List[LogEntry] = []
        self._lock = threading.RLock()

    def save(self, automation: Automation) -> str:
        with self._lock:
            self._automations[automation.id] = automation.model_copy(deep=True)
        return automation.id

    def get(self, record_id: str) -> Automation | None:
        with self._lock:
            automation = self._automations.get(record_id)
            return automation.model_copy(deep=True) if automation else None

    def list_automations(
        self,
        event_id: str | None = None,
        status: AutomationStatus | None = None,
        trigger_type: TriggerType | None = None,
    ) -> List[Automation]:
        with self._lock:
            found = [
                automation.model_copy(deep=True)
                for automation in self._automations.values()
                if (event_id is None or automation.event_id == event_id)
                and (status is None or automation.status == status)
                and (trigger_type is None or automation.trigger_type == trigger_type)
            ]
        return sorted(found, key=lambda a: a.created_at, reverse=True)

    def delete(self, record_id: str) -> None:
        with self._lock:
            self._automations.pop(record_id, None)
            for step_id in [s.id for s in self._steps.values() if s.automation_id == record_id]:
                del self._steps[step_id]
            for enrollment_id in [e.id for e in self._enrollments.values() if e.automation_id == record_id]:
                del self._enrollments[enrollment_id]

    def update_automation(
        self, automation_id: str, changes: Dict[str, Any], bump_version: bool = False
    ) -> Automation:
        check_automation_changes(changes)
        with self._lock:
            automation = self._automations.get(automation_id)
            if automation is None:
                raise NotFoundError(f"Automation {automation_id} not found")
            update = dict(changes)
            if bump_version:
                update["version"] = automation.version + 1
            self._automations[automation_id] = automation.model_copy(update=update, deep=True)
            return self._automations[automation_id].model_copy(deep=True)

    def _bump_version(self, automation_id: str) -> None:
        automation = self._automations.get(automation_id)
        if automation is None:
            raise NotFoundError(f"Automation {automation_id} not found")
        self._automations[automation_id] = automation.model_copy(
            update={"version": automation.version + 1, "updated_at": utcnow()}
        )

    def save_step(self, step: Step) -> str:
        with self._lock:
            self._bump_version(step.automation_id)
            self._steps[step.id] = step
        return step.id

    def get_step(self, step_id: str) -> Step | None:
        with self._lock:
            return self._steps.get(step_id)

    def list_steps(self, automation_id: str) -> List[Step]:
        with self._lock:
            steps = [s for s in self._steps.values() if s.automation_id == automation_id]
        return sorted(steps, key=lambda s: (s.position, s.created_at))

    def delete_step(self, step_id: str) -> None:
        with self._lock:
            step = self._steps.pop(step_id, None)
            if step is not None:
                self._bump_version(step.automation_id)

    def create_enrollment(self, enrollment: Enrollment) -> Enrollment | None:
        with self._lock:
            for existing in self._enrollments.values():
                if existing.automation_id == enrollment.automation_id and existing.contact_id == enrollment.contact_id:
                    return None
            automation = self._automations.get(enrollment.automation_id)
            if automation is None:
                raise NotFoundError(f"Automation {enrollment.automation_id} not found")
            self._automations[automation.id] = automation.model_copy(
                update={"enrollment_count": automation.enrollment_count + 1}
            )
            self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
            return enrollment.model_copy(deep=True)

    def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        with self._lock:
            enrollment = self._enrollments.get(enrollment_id)
            return enrollment.model_copy(deep=True) if enrollment else None

    def list_enrollments(
        self, automation_id: str | None = None, contact_id: str | None = None
    ) -> List[Enrollment]:
        with self._lock:
            found = [
                e.model_copy(deep=True)
                for e in self._enrollments.values()
                if (automation_id is None or e.automation_id == automation_id)
                and (contact_id is None or e.contact_id == contact_id)
            ]
        return sorted(found, key=lambda e: e.started_at, reverse=True)

    def find_runnable(self, now: datetime, limit: int) -> List[str]:
        with self._lock:
            due = [
                e
                for e in self._enrollments.values()
                if e.is_runnable(now)
                and e.lease_free(now)
                and (a := self._automations.get(e.automation_id)) is not None
                and a.is_active
            ]
        due.sort(key=lambda e: (e.wait_until or e.started_at, e.started_at))
        return [e.id for e in due[:limit]]

    def claim(self, enrollment_id: str, owner: str, now: datetime, ttl: timedelta) -> Enrollment | None:
        with self._lock:
            enrollment = self._enrollments.get(enrollment_id)
            if enrollment is None or enrollment.status != EnrollmentStatus.ACTIVE:
                return None
            if not enrollment.lease_free(now) and enrollment.lease_owner != owner:
                return None
            claimed = enrollment.model_copy(update={"lease_owner": owner, "lease_expires_at": now + ttl})
            self._enrollments[enrollment_id] = claimed
            return claimed.model_copy(deep=True)

    def release(self, enrollment_id: str, owner: str) -> None:
        with self._lock:
            enrollment = self._enrollments.get(enrollment_id)
            if enrollment is not None and enrollment.lease_owner == owner:
                self._enrollments[enrollment_id] = enrollment.model_copy(
                    update={"lease_owner": None, "lease_expires_at": None}
                )

    def commit_transition(
        self, enrollment: Enrollment, owner: str, entries: Iterable[LogEntry] = ()
    ) -> Enrollment:
        with self._lock:
            current = self._enrollments.get(enrollment.id)
            if current is None:
                raise NotFoundError(f"Enrollment {enrollment.id} not found")
            if current.lease_owner != owner:
                raise LeaseError(f"Lease on enrollment {enrollment.id} is not held by {owner}")
            stored = enrollment.model_copy(
                update={"lease_owner": None, "lease_expires_at": None, "updated_at": utcnow()}
            )
            if stored.status == EnrollmentStatus.COMPLETED and current.status != EnrollmentStatus.COMPLETED:
                automation = self._automations.get(stored.automation_id)
                if automation is not None:
                    self._automations[automation.id] = automation.model_copy(
                        update={"completed_count": automation.completed_count + 1}
                    )
            self._enrollments[stored.id] = stored
            self._logs.extend(entries)
            return stored.model_copy(deep=True)

    def append_log(self, entry: LogEntry) -> None:
        with self._lock:
            self._logs.append(entry)

    def query_logs(
        self,
        automation_id: str | None = None,
        enrollment_id: str | None = None,
        contact_id: str | None = None,
        step_id: str | None = None,
        status: StepExecutionStatus | None = None,
        limit: int | None = None,
    ) -> List[LogEntry]:
        with self._lock:
            found = [
                entry
                for entry in reversed(self._logs)
                if (automation_id is None or entry.automation_id == automation_id)
                and (enrollment_id is None or entry.enrollment_id == enrollment_id)
                and (contact_id is None or entry.contact_id == contact_id)
                and (step_id is None or entry.step_id == step_id)
                and (status is None or entry.status == status)
            ]
        found.sort(key=lambda entry: entry.executed_at, reverse=True)
        return found if limit is None else found[:limit]
