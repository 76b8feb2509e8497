from datetime import datetime
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field

from .automation import TriggerType, utcnow


class DomainEvent(BaseModel):
    """An event raised by the surrounding system that may enroll a contact."""

    model_config = ConfigDict(frozen=True)

    type: TriggerType
    event_id: str = Field(..., description="Event scope the occurrence belongs to")
    edition_id: str | None = None
    contact_id: str | None = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)
