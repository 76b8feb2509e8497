"""Operator surface: define automations, edit their steps, control their lifecycle."""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Dict, List, Sequence

from db import AutomationRepository
from errors import AutomationStateError, LeaseError, NotFoundError
from models import (
    Automation,
    AutomationStatus,
    ConditionStep,
    Enrollment,
    EnrollmentStatus,
    LogEntry,
    Step,
    new_id,
    utcnow,
)
from registry import Registry, create_default_registries, describe_registries
from validations import WorkflowGraph, parse_and_validate_automation, parse_and_validate_step

from .log import ExecutionLog

logger = logging.getLogger(__name__)

AUTOMATION_EDITABLE_FIELDS = frozenset({"name", "description", "trigger_config"})
STEP_EDITABLE_FIELDS = frozenset({"name", "config", "next_step_id"})
OPERATOR_LEASE_TTL = timedelta(seconds=30)


class AutomationService:
    def __init__(
        self,
        repository: AutomationRepository,
        registries: Dict[str, Registry] | None = None,
        on_enrolled: Callable[[str], None] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.registries = registries or create_default_registries()
        self.log = ExecutionLog(repository)
        self._on_enrolled = on_enrolled
        self._clock = clock

    def catalog(self) -> Dict[str, List[Dict[str, str]]]:
        """Trigger types, step types and condition operators with display labels."""
        return describe_registries(self.registries)

    # Automations

    def get(self, automation_id: str) -> Automation:
        automation = self.repository.get(automation_id)
        if automation is None:
            raise NotFoundError(f"Automation {automation_id} not found")
        return automation

    def create(self, payload: Dict[str, Any]) -> Automation:
        """Create a draft automation. Counters, status and version always start fresh."""
        data = {
            **payload,
            "status": AutomationStatus.DRAFT,
            "enrollment_count": 0,
            "completed_count": 0,
            "version": 0,
            "start_step_id": None,
        }
        automation = parse_and_validate_automation(data, self.registries)
        self.repository.save(automation)
        logger.info("Created automation %s (%s) for event %s", automation.id, automation.name, automation.event_id)
        return automation

    def update(self, automation_id: str, changes: Dict[str, Any]) -> Automation:
        unknown = set(changes) - AUTOMATION_EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update automation fields: {', '.join(sorted(unknown))}")
        current = self.get(automation_id)
        data = {**current.model_dump(), **changes}
        automation = parse_and_validate_automation(data, self.registries)
        columns = {field: getattr(automation, field) for field in changes}
        return self.repository.update_automation(automation_id, {**columns, "updated_at": self._clock()})

    def delete(self, automation_id: str) -> None:
        self.get(automation_id)
        self.repository.delete(automation_id)
        logger.info("Deleted automation %s", automation_id)

    def list_by_event(self, event_id: str, status: AutomationStatus | None = None) -> List[Automation]:
        return self.repository.list_automations(event_id=event_id, status=status)

    # Steps

    def _editable(self, automation_id: str) -> Automation:
        automation = self.get(automation_id)
        if not automation.is_editable:
            raise AutomationStateError(f"Automation {automation_id} is active; pause it before editing steps")
        return automation

    def _get_step(self, step_id: str) -> Step:
        step = self.repository.get_step(step_id)
        if step is None:
            raise NotFoundError(f"Step {step_id} not found")
        return step

    def list_steps(self, automation_id: str) -> List[Step]:
        return self.repository.list_steps(automation_id)

    def add_step(self, automation_id: str, payload: Dict[str, Any]) -> Step:
        """Validate and append a step; the first step added becomes the start step."""
        automation = self._editable(automation_id)
        existing = self.repository.list_steps(automation_id)
        data = {"position": len(existing), **payload, "automation_id": automation_id}
        step = parse_and_validate_step(data, self.registries)
        self.repository.save_step(step)
        if automation.start_step_id is None:
            self._save_start_step(automation_id, step.id)
        logger.info("Added %s step %s to automation %s", step.type, step.id, automation_id)
        return step

    def update_step(self, step_id: str, changes: Dict[str, Any]) -> Step:
        unknown = set(changes) - STEP_EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update step fields: {', '.join(sorted(unknown))}")
        current = self._get_step(step_id)
        self._editable(current.automation_id)
        data = {**current.model_dump(), **changes, "updated_at": self._clock()}
        step = parse_and_validate_step(data, self.registries)
        self.repository.save_step(step)
        return step

    def delete_step(self, step_id: str) -> None:
        """Delete a step and detach every reference to it."""
        step = self._get_step(step_id)
        automation = self._editable(step.automation_id)
        for other in self.repository.list_steps(automation.id):
            if other.id == step_id:
                continue
            detached = _detach(other, step_id)
            if detached is not other:
                self.repository.save_step(detached)
        self.repository.delete_step(step_id)
        if automation.start_step_id == step_id:
            self._save_start_step(automation.id, None)

    def reorder_steps(self, automation_id: str, step_ids: Sequence[str]) -> List[Step]:
        """Assign display positions in the given order. Execution order is unaffected."""
        self._editable(automation_id)
        steps = {step.id: step for step in self.repository.list_steps(automation_id)}
        missing = [step_id for step_id in step_ids if step_id not in steps]
        if missing:
            raise NotFoundError(f"Steps not in automation {automation_id}: {', '.join(missing)}")
        for position, step_id in enumerate(step_ids):
            if steps[step_id].position != position:
                self.repository.save_step(steps[step_id].model_copy(update={"position": position}))
        return self.repository.list_steps(automation_id)

    def set_start_step(self, automation_id: str, step_id: str) -> Automation:
        self._editable(automation_id)
        step = self._get_step(step_id)
        if step.automation_id != automation_id:
            raise NotFoundError(f"Step {step_id} not in automation {automation_id}")
        return self._save_start_step(automation_id, step_id)

    def _save_start_step(self, automation_id: str, step_id: str | None) -> Automation:
        return self.repository.update_automation(
            automation_id, {"start_step_id": step_id, "updated_at": self._clock()}, bump_version=True
        )

    # Lifecycle

    def validate(self, automation_id: str) -> WorkflowGraph:
        """Build the step graph, raising GraphValidationError if it cannot run."""
        automation = self.get(automation_id)
        return WorkflowGraph.build(automation, self.repository.list_steps(automation_id))

    def activate(self, automation_id: str) -> Automation:
        automation = self.get(automation_id)
        if automation.is_active:
            raise AutomationStateError(f"Automation {automation_id} is already active")
        graph = self.validate(automation_id)
        unreachable = graph.unreachable_ids()
        if unreachable:
            logger.warning("Automation %s has unreachable steps: %s", automation_id, ", ".join(unreachable))
        activated = self.repository.update_automation(
            automation_id, {"status": AutomationStatus.ACTIVE, "updated_at": self._clock()}
        )
        logger.info("Activated automation %s (version %d)", automation_id, activated.version)
        return activated

    def pause(self, automation_id: str) -> Automation:
        """Stop enrolling and freeze in-flight enrollments where they are."""
        automation = self.get(automation_id)
        if automation.status != AutomationStatus.ACTIVE:
            raise AutomationStateError(f"Automation {automation_id} is not active")
        paused = self.repository.update_automation(
            automation_id, {"status": AutomationStatus.PAUSED, "updated_at": self._clock()}
        )
        logger.info("Paused automation %s", automation_id)
        return paused

    def duplicate(self, automation_id: str, name: str) -> Automation:
        """Copy an automation and its steps into a new draft with fresh ids."""
        source = self.get(automation_id)
        copy = self.create(
            {
                "event_id": source.event_id,
                "edition_id": source.edition_id,
                "name": name,
                "description": source.description,
                "trigger_type": source.trigger_type,
                "trigger_config": source.trigger_config,
                "created_by": source.created_by,
            }
        )
        steps = self.repository.list_steps(automation_id)
        id_map = {step.id: new_id() for step in steps}

        def remap(step_id: str | None) -> str | None:
            return id_map.get(step_id) if step_id else None

        for step in steps:
            data = step.model_dump()
            data.update(
                id=id_map[step.id],
                automation_id=copy.id,
                next_step_id=remap(step.next_step_id),
                created_at=self._clock(),
                updated_at=self._clock(),
            )
            if isinstance(step, ConditionStep):
                data["config"].update(on_true=remap(step.config.on_true), on_false=remap(step.config.on_false))
            self.repository.save_step(parse_and_validate_step(data, self.registries))

        if source.start_step_id:
            return self._save_start_step(copy.id, remap(source.start_step_id))
        return self.get(copy.id)

    # Enrollments

    def enroll_contact(self, automation_id: str, contact_id: str) -> Enrollment:
        """Enroll a contact by hand, outside any trigger."""
        automation = self.get(automation_id)
        if not automation.is_active:
            raise AutomationStateError(f"Automation {automation_id} is not active")
        enrollment = self.repository.create_enrollment(
            Enrollment(automation_id=automation_id, contact_id=contact_id, started_at=self._clock())
        )
        if enrollment is None:
            raise AutomationStateError(f"Contact {contact_id} is already enrolled in automation {automation_id}")
        if self._on_enrolled is not None:
            self._on_enrolled(enrollment.id)
        return enrollment

    def get_enrollment(self, enrollment_id: str) -> Enrollment:
        enrollment = self.repository.get_enrollment(enrollment_id)
        if enrollment is None:
            raise NotFoundError(f"Enrollment {enrollment_id} not found")
        return enrollment

    def list_enrollments(self, automation_id: str) -> List[Enrollment]:
        return self.repository.list_enrollments(automation_id=automation_id)

    def list_contact_enrollments(self, contact_id: str) -> List[Enrollment]:
        return self.repository.list_enrollments(contact_id=contact_id)

    def exit_enrollment(self, enrollment_id: str, reason: str) -> Enrollment:
        """Take an enrollment out of its automation.

        Raises LeaseError while a worker is executing one of its steps; the
        caller can retry once the step has been committed.
        """
        now = self._clock()
        owner = f"operator:{new_id()}"
        claimed = self.repository.claim(enrollment_id, owner, now, OPERATOR_LEASE_TTL)
        if claimed is None:
            enrollment = self.get_enrollment(enrollment_id)
            if enrollment.is_terminal:
                raise AutomationStateError(f"Enrollment {enrollment_id} already ended as {enrollment.status.value}")
            raise LeaseError(f"Enrollment {enrollment_id} is being processed")
        exited = claimed.model_copy(
            update={
                "status": EnrollmentStatus.EXITED,
                "exited_at": now,
                "exit_reason": reason,
                "wait_until": None,
            }
        )
        stored = self.repository.commit_transition(exited, owner)
        logger.info("Exited enrollment %s: %s", enrollment_id, reason)
        return stored

    def enrollment_history(self, enrollment_id: str) -> List[LogEntry]:
        self.get_enrollment(enrollment_id)
        return self.log.for_enrollment(enrollment_id)

    # Logs

    def get_logs(self, automation_id: str, contact_id: str | None = None, limit: int = 100) -> List[LogEntry]:
        return self.log.for_automation(automation_id, contact_id=contact_id, limit=limit)


def _detach(step: Step, removed_id: str) -> Step:
    """Return the step with every reference to `removed_id` cleared, or the step itself if none."""
    update: Dict[str, Any] = {}
    if step.next_step_id == removed_id:
        update["next_step_id"] = None
    if isinstance(step, ConditionStep):
        branches = {}
        if step.config.on_true == removed_id:
            branches["on_true"] = None
        if step.config.on_false == removed_id:
            branches["on_false"] = None
        if branches:
            update["config"] = step.config.model_copy(update=branches)
    return step.model_copy(update=update) if update else step
