from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from .automation import new_id, utcnow


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXITED = "exited"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({EnrollmentStatus.COMPLETED, EnrollmentStatus.EXITED, EnrollmentStatus.FAILED})


class Enrollment(BaseModel):
    """One contact's run through one automation.

    `current_step_id` is the step the enrollment is positioned on: None before
    the entry step has run, the next step to execute after an advance, and the
    wait step itself while parked (with `wait_until` set).
    """

    id: str = Field(default_factory=new_id)
    automation_id: str
    contact_id: str
    current_step_id: str | None = None
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    exited_at: datetime | None = None
    exit_reason: str | None = Field(None, description="Set only on exited/failed")
    wait_until: datetime | None = Field(None, description="Set only while parked on a wait step")
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_runnable(self, now: datetime) -> bool:
        if self.status != EnrollmentStatus.ACTIVE:
            return False
        return self.wait_until is None or self.wait_until <= now

    def lease_free(self, now: datetime) -> bool:
        return self.lease_owner is None or self.lease_expires_at is None or self.lease_expires_at <= now
