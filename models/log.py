from datetime import datetime
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field

from .automation import new_id, utcnow
from .steps import StepType


class StepExecutionStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class LogEntry(BaseModel):
    """Immutable record of one step execution attempt.

    Doubles as the idempotency ledger: a `completed` row for an
    (enrollment_id, step_id) pair means the step's side effect already happened.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    automation_id: str
    enrollment_id: str
    contact_id: str
    step_id: str
    step_type: StepType
    status: StepExecutionStatus
    attempt: int = Field(1, ge=1)
    input: Dict[str, Any] | None = None
    output: Dict[str, Any] | None = None
    error: str | None = None
    executed_at: datetime = Field(default_factory=utcnow)
