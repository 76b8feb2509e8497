"""Match domain events against automation triggers and enroll contacts."""

import logging
from collections.abc import Callable
from datetime import date, datetime
from typing import Any, Dict, List

from db import AutomationRepository
from models import (
    Automation,
    AutomationStatus,
    ConsentGivenTrigger,
    ContactCreatedTrigger,
    DomainEvent,
    Enrollment,
    ScheduledDateTrigger,
    TagAddedTrigger,
    TicketPurchasedTrigger,
    TriggerType,
    parse_trigger_config,
    utcnow,
)

logger = logging.getLogger(__name__)


def _as_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value).date()
        except ValueError:
            return None
    return None


def trigger_matches(automation: Automation, event: DomainEvent) -> bool:
    """Evaluate the automation's trigger config against the event payload."""
    if automation.trigger_type != event.type:
        return False
    config = parse_trigger_config(automation.trigger_type, automation.trigger_config)
    payload: Dict[str, Any] = event.payload

    if isinstance(config, ContactCreatedTrigger):
        return not config.contact_types or payload.get("contact_type") in config.contact_types
    if isinstance(config, TicketPurchasedTrigger):
        return not config.ticket_type_ids or payload.get("ticket_type_id") in config.ticket_type_ids
    if isinstance(config, TagAddedTrigger):
        return payload.get("tag_id") in config.tag_ids
    if isinstance(config, ConsentGivenTrigger):
        return payload.get("consent_type") == config.consent_type
    if isinstance(config, ScheduledDateTrigger):
        if payload.get("date_field") != config.date_field:
            return False
        reference = _as_date(payload.get("reference_date"))
        if reference is None:
            return False
        return config.fires_on(reference) == event.occurred_at.date()
    return True


class TriggerEvaluator:
    def __init__(
        self,
        repository: AutomationRepository,
        on_enrolled: Callable[[str], None] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self._on_enrolled = on_enrolled
        self._clock = clock

    def set_listener(self, on_enrolled: Callable[[str], None]) -> None:
        self._on_enrolled = on_enrolled

    def _candidates(self, event: DomainEvent) -> List[Automation]:
        automations = self.repository.list_automations(
            event_id=event.event_id, status=AutomationStatus.ACTIVE, trigger_type=event.type
        )
        return [
            a for a in automations if not a.edition_id or not event.edition_id or a.edition_id == event.edition_id
        ]

    def handle(self, event: DomainEvent) -> List[Enrollment]:
        """Enroll the event's contact in every active automation whose trigger matches.

        A contact already enrolled in an automation is left alone. New
        enrollments are handed to the scheduler straight away.
        """
        if not event.contact_id:
            logger.debug("Ignoring %s event without a contact", event.type.value)
            return []

        enrolled: List[Enrollment] = []
        for automation in self._candidates(event):
            if not trigger_matches(automation, event):
                continue
            enrollment = self.repository.create_enrollment(
                Enrollment(automation_id=automation.id, contact_id=event.contact_id, started_at=self._clock())
            )
            if enrollment is None:
                logger.debug("Contact %s already enrolled in automation %s", event.contact_id, automation.id)
                continue
            logger.info(
                "Enrolled contact %s in automation %s (%s)", event.contact_id, automation.id, automation.name
            )
            enrolled.append(enrollment)
            if self._on_enrolled is not None:
                self._on_enrolled(enrollment.id)
        return enrolled

    def on_event(self, event_type: TriggerType, contact_id: str | None, payload: Dict[str, Any]) -> List[Enrollment]:
        """Event-source entry point; the payload must carry the owning `event_id`."""
        event_id = payload.get("event_id")
        if not event_id:
            raise ValueError(f"{TriggerType(event_type).value} event for contact {contact_id} has no event_id")
        event = DomainEvent(
            type=event_type,
            event_id=event_id,
            edition_id=payload.get("edition_id"),
            contact_id=contact_id,
            payload=payload,
            occurred_at=self._clock(),
        )
        return self.handle(event)
