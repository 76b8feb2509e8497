import uuid
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class TriggerType(str, Enum):
    CONTACT_CREATED = "contact_created"
    TICKET_PURCHASED = "ticket_purchased"
    CHECKED_IN = "checked_in"
    TAG_ADDED = "tag_added"
    CONSENT_GIVEN = "consent_given"
    SCHEDULED_DATE = "scheduled_date"
    TALK_SUBMITTED = "talk_submitted"
    TALK_ACCEPTED = "talk_accepted"
    TALK_REJECTED = "talk_rejected"


class AutomationStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"


class _TriggerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class ContactCreatedTrigger(_TriggerConfig):
    contact_types: List[str] | None = Field(None, description="Contact types to match; empty matches any")


class TicketPurchasedTrigger(_TriggerConfig):
    ticket_type_ids: List[str] | None = Field(None, description="Ticket types to match; empty matches any")


class TagAddedTrigger(_TriggerConfig):
    tag_ids: List[str] = Field(..., min_length=1)


class ConsentGivenTrigger(_TriggerConfig):
    consent_type: Literal["marketing", "newsletter", "partner"]


class ScheduledDateTrigger(_TriggerConfig):
    date_field: str = Field(..., min_length=1)
    offset_days: int = Field(0, ge=0)
    offset_direction: Literal["before", "after"] = "after"

    def fires_on(self, reference: date) -> date:
        """Day on which the trigger fires for a contact whose date field holds `reference`."""
        offset = timedelta(days=self.offset_days)
        return reference - offset if self.offset_direction == "before" else reference + offset


class EmptyTrigger(_TriggerConfig):
    """Trigger types that carry no matcher configuration."""


TRIGGER_CONFIG_TYPES: Dict[TriggerType, type[_TriggerConfig]] = {
    TriggerType.CONTACT_CREATED: ContactCreatedTrigger,
    TriggerType.TICKET_PURCHASED: TicketPurchasedTrigger,
    TriggerType.CHECKED_IN: EmptyTrigger,
    TriggerType.TAG_ADDED: TagAddedTrigger,
    TriggerType.CONSENT_GIVEN: ConsentGivenTrigger,
    TriggerType.SCHEDULED_DATE: ScheduledDateTrigger,
    TriggerType.TALK_SUBMITTED: EmptyTrigger,
    TriggerType.TALK_ACCEPTED: EmptyTrigger,
    TriggerType.TALK_REJECTED: EmptyTrigger,
}


def parse_trigger_config(trigger_type: TriggerType, config: Dict[str, Any]) -> _TriggerConfig:
    """Validate a raw trigger config against the model for its trigger type.

    Raises pydantic.ValidationError when the config does not fit.
    """
    return TRIGGER_CONFIG_TYPES[TriggerType(trigger_type)].model_validate(config or {})


class Automation(BaseModel):
    """One workflow definition: a trigger plus a graph of steps."""

    id: str = Field(default_factory=new_id)
    event_id: str = Field(..., description="Owning event scope")
    edition_id: str | None = Field(None, description="Optional edition sub-scope")
    name: str = Field(..., min_length=1, max_length=200, description="Human friendly name for the automation")
    description: str | None = None
    trigger_type: TriggerType
    trigger_config: Dict[str, Any] = Field(default_factory=dict, description="Trigger-specific matcher")
    status: AutomationStatus = AutomationStatus.DRAFT
    start_step_id: str | None = None
    enrollment_count: int = Field(0, ge=0)
    completed_count: int = Field(0, ge=0)
    version: int = Field(0, ge=0, description="Bumped on every change to the step set")
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def ensure_trigger_config_matches_type(self) -> "Automation":
        parse_trigger_config(self.trigger_type, self.trigger_config)
        return self

    @property
    def is_active(self) -> bool:
        return self.status == AutomationStatus.ACTIVE

    @property
    def is_editable(self) -> bool:
        return self.status != AutomationStatus.ACTIVE
