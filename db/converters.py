"""
Conversion utilities between Pydantic models and SQLAlchemy DB models.
"""

from models import Automation, Enrollment, LogEntry, Step, parse_step

from .models import AutomationModel, EnrollmentModel, LogEntryModel, StepModel


def pydantic_to_db_automation(automation: Automation) -> AutomationModel:
    return AutomationModel(
        id=automation.id,
        event_id=automation.event_id,
        edition_id=automation.edition_id,
        name=automation.name,
        description=automation.description,
        trigger_type=automation.trigger_type.value,
        trigger_config=automation.trigger_config,
        status=automation.status.value,
        start_step_id=automation.start_step_id,
        enrollment_count=automation.enrollment_count,
        completed_count=automation.completed_count,
        version=automation.version,
        created_by=automation.created_by,
        created_at=automation.created_at,
        updated_at=automation.updated_at,
    )


def db_to_pydantic_automation(db_automation: AutomationModel) -> Automation:
    return Automation(
        id=db_automation.id,
        event_id=db_automation.event_id,
        edition_id=db_automation.edition_id,
        name=db_automation.name,
        description=db_automation.description,
        trigger_type=db_automation.trigger_type,
        trigger_config=db_automation.trigger_config or {},
        status=db_automation.status,
        start_step_id=db_automation.start_step_id,
        enrollment_count=db_automation.enrollment_count,
        completed_count=db_automation.completed_count,
        version=db_automation.version,
        created_by=db_automation.created_by,
        created_at=db_automation.created_at,
        updated_at=db_automation.updated_at,
    )


def pydantic_to_db_step(step: Step) -> StepModel:
    # Config is stored in JSON mode so datetimes (absolute waits) survive the round trip.
    return StepModel(
        id=step.id,
        automation_id=step.automation_id,
        type=str(step.type),
        name=step.name,
        config=step.config.model_dump(mode="json"),
        position=step.position,
        next_step_id=step.next_step_id,
        created_at=step.created_at,
        updated_at=step.updated_at,
    )


def db_to_pydantic_step(db_step: StepModel) -> Step:
    return parse_step(
        {
            "id": db_step.id,
            "automation_id": db_step.automation_id,
            "type": db_step.type,
            "name": db_step.name,
            "config": db_step.config,
            "position": db_step.position,
            "next_step_id": db_step.next_step_id,
            "created_at": db_step.created_at,
            "updated_at": db_step.updated_at,
        }
    )


def pydantic_to_db_enrollment(enrollment: Enrollment) -> EnrollmentModel:
    return EnrollmentModel(**enrollment_columns(enrollment))


def enrollment_columns(enrollment: Enrollment) -> dict:
    return {
        "id": enrollment.id,
        "automation_id": enrollment.automation_id,
        "contact_id": enrollment.contact_id,
        "current_step_id": enrollment.current_step_id,
        "status": enrollment.status.value,
        "started_at": enrollment.started_at,
        "completed_at": enrollment.completed_at,
        "exited_at": enrollment.exited_at,
        "exit_reason": enrollment.exit_reason,
        "wait_until": enrollment.wait_until,
        "lease_owner": enrollment.lease_owner,
        "lease_expires_at": enrollment.lease_expires_at,
        "updated_at": enrollment.updated_at,
    }


def db_to_pydantic_enrollment(db_enrollment: EnrollmentModel) -> Enrollment:
    return Enrollment(
        id=db_enrollment.id,
        automation_id=db_enrollment.automation_id,
        contact_id=db_enrollment.contact_id,
        current_step_id=db_enrollment.current_step_id,
        status=db_enrollment.status,
        started_at=db_enrollment.started_at,
        completed_at=db_enrollment.completed_at,
        exited_at=db_enrollment.exited_at,
        exit_reason=db_enrollment.exit_reason,
        wait_until=db_enrollment.wait_until,
        lease_owner=db_enrollment.lease_owner,
        lease_expires_at=db_enrollment.lease_expires_at,
        updated_at=db_enrollment.updated_at,
    )


def pydantic_to_db_log_entry(entry: LogEntry) -> LogEntryModel:
    data = entry.model_dump(mode="json", include={"input", "output"})
    return LogEntryModel(
        id=entry.id,
        automation_id=entry.automation_id,
        enrollment_id=entry.enrollment_id,
        contact_id=entry.contact_id,
        step_id=entry.step_id,
        step_type=entry.step_type.value,
        status=entry.status.value,
        attempt=entry.attempt,
        input=data["input"],
        output=data["output"],
        error=entry.error,
        executed_at=entry.executed_at,
    )


def db_to_pydantic_log_entry(db_entry: LogEntryModel) -> LogEntry:
    return LogEntry(
        id=db_entry.id,
        automation_id=db_entry.automation_id,
        enrollment_id=db_entry.enrollment_id,
        contact_id=db_entry.contact_id,
        step_id=db_entry.step_id,
        step_type=db_entry.step_type,
        status=db_entry.status,
        attempt=db_entry.attempt,
        input=db_entry.input,
        output=db_entry.output,
        error=db_entry.error,
        executed_at=db_entry.executed_at,
    )
