from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from .automation import new_id, utcnow


class StepType(str, Enum):
    SEND_EMAIL = "send_email"
    WAIT = "wait"
    CONDITION = "condition"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    UPDATE_FIELD = "update_field"
    WEBHOOK = "webhook"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IS_SET = "is_set"
    IS_NOT_SET = "is_not_set"
    HAS_TAG = "has_tag"
    NOT_HAS_TAG = "not_has_tag"
    IN_SEGMENT = "in_segment"
    NOT_IN_SEGMENT = "not_in_segment"


WAIT_UNITS: Dict[str, timedelta] = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
}


class _StepConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class SendEmailConfig(_StepConfig):
    template_id: str = Field(..., min_length=1)
    subject: str | None = None
    from_name: str | None = None


class WaitConfig(_StepConfig):
    duration: int | None = Field(None, ge=1)
    unit: Literal["minutes", "hours", "days"] | None = None
    until: datetime | None = Field(None, description="Absolute resume time, alternative to duration")

    @model_validator(mode="after")
    def ensure_single_form(self) -> "WaitConfig":
        relative = self.duration is not None or self.unit is not None
        if relative and self.until is not None:
            raise ValueError("Wait takes either duration/unit or until, not both")
        if self.until is None and (self.duration is None or self.unit is None):
            raise ValueError("Duration and unit are required")
        if self.until is not None and self.until.tzinfo is None:
            raise ValueError("Absolute wait time must be timezone-aware")
        return self

    def resume_at(self, now: datetime) -> datetime:
        if self.until is not None:
            return self.until
        return now + WAIT_UNITS[self.unit] * self.duration

    def describe(self) -> str:
        if self.until is not None:
            return f"until {self.until.isoformat()}"
        label = self.unit[:-1] if self.duration == 1 else self.unit
        return f"{self.duration} {label}"


MEMBERSHIP_OPERATORS = frozenset(
    {
        ConditionOperator.HAS_TAG,
        ConditionOperator.NOT_HAS_TAG,
        ConditionOperator.IN_SEGMENT,
        ConditionOperator.NOT_IN_SEGMENT,
    }
)

VALUE_OPERATORS = MEMBERSHIP_OPERATORS | {
    ConditionOperator.CONTAINS,
    ConditionOperator.NOT_CONTAINS,
    ConditionOperator.GREATER_THAN,
    ConditionOperator.LESS_THAN,
}


class ConditionConfig(_StepConfig):
    field: str | None = Field(None, description="Dotted path into the contact snapshot")
    operator: ConditionOperator
    value: Any = None
    on_true: str | None = Field(None, description="Successor when the predicate holds")
    on_false: str | None = Field(None, description="Successor when it does not")

    @model_validator(mode="after")
    def ensure_operands(self) -> "ConditionConfig":
        # Tag and segment operators test membership of `value`; every other operator reads `field`.
        if self.operator not in MEMBERSHIP_OPERATORS and not self.field:
            raise ValueError("Field and operator are required")
        if self.operator in VALUE_OPERATORS and self.value is None:
            raise ValueError(f"Operator {self.operator.value} requires a value")
        return self


class TagConfig(_StepConfig):
    tag_id: str = Field(..., min_length=1)


class UpdateFieldConfig(_StepConfig):
    field_name: str = Field(..., min_length=1)
    value: Any = None
    value_from: str | None = Field(None, description="Copy the value from this contact field path")

    @model_validator(mode="after")
    def ensure_single_source(self) -> "UpdateFieldConfig":
        if self.value_from is not None and self.value is not None:
            raise ValueError("Update takes either a literal value or value_from, not both")
        return self


class WebhookConfig(_StepConfig):
    url: str = Field(..., min_length=1)
    method: Literal["POST", "PUT"] = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("url")
    @classmethod
    def ensure_http_url(cls, url: str) -> str:
        if not url.startswith(("http://", "https://")):
            raise ValueError("Webhook URL must be http or https")
        return url


class _BaseStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    automation_id: str
    name: str | None = None
    position: int = Field(0, ge=0, description="Display ordering only")
    next_step_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def successor_ids(self) -> List[str]:
        return [self.next_step_id] if self.next_step_id else []


class SendEmailStep(_BaseStep):
    type: Literal["send_email"] = "send_email"
    config: SendEmailConfig


class WaitStep(_BaseStep):
    type: Literal["wait"] = "wait"
    config: WaitConfig


class ConditionStep(_BaseStep):
    type: Literal["condition"] = "condition"
    config: ConditionConfig

    def successor_ids(self) -> List[str]:
        return [ref for ref in (self.config.on_true, self.config.on_false) if ref]


class AddTagStep(_BaseStep):
    type: Literal["add_tag"] = "add_tag"
    config: TagConfig


class RemoveTagStep(_BaseStep):
    type: Literal["remove_tag"] = "remove_tag"
    config: TagConfig


class UpdateFieldStep(_BaseStep):
    type: Literal["update_field"] = "update_field"
    config: UpdateFieldConfig


class WebhookStep(_BaseStep):
    type: Literal["webhook"] = "webhook"
    config: WebhookConfig


Step = Annotated[
    Union[SendEmailStep, WaitStep, ConditionStep, AddTagStep, RemoveTagStep, UpdateFieldStep, WebhookStep],
    Field(discriminator="type"),
]

STEP_ADAPTER: TypeAdapter[Step] = TypeAdapter(Step)

NETWORK_STEP_TYPES = frozenset({StepType.SEND_EMAIL, StepType.WEBHOOK})


def parse_step(payload: Dict[str, Any]) -> Step:
    """Build the step variant matching payload["type"].

    Raises pydantic.ValidationError when the type is unknown or the config
    does not fit that step kind.
    """
    return STEP_ADAPTER.validate_python(payload)
