"""Per-kind step execution.

Each handler takes an enrollment and its current step and returns a
StepResult: the outcome (Advance, Wait, Exit, Fail) and the log entry that
the scheduler commits together with the resulting state transition.
Handlers always read a fresh contact snapshot; nothing is cached between
steps because an arbitrary amount of time may pass between them.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, Dict

from errors import PermanentError, TransientError
from models import (
    AddTagStep,
    Advance,
    ConditionStep,
    ContactSnapshot,
    Enrollment,
    Exit,
    Fail,
    RemoveTagStep,
    SendEmailStep,
    Step,
    StepExecutionStatus,
    StepType,
    UpdateFieldStep,
    Wait,
    WaitStep,
    WebhookStep,
    utcnow,
)

from .conditions import evaluate_condition, resolve_field
from .interfaces import ContactNotFoundError, ContactStore, EmailTransport, WebhookClient
from .log import build_entry
from .retry import Heartbeat, RetryCoordinator, StepResult
from .webhooks import build_payload, encode_request

logger = logging.getLogger(__name__)


# Steps with network side effects; they run through the RetryCoordinator.
RETRIED_STEP_TYPES = frozenset({StepType.SEND_EMAIL, StepType.WEBHOOK})


def idempotency_key(enrollment: Enrollment, step: Step) -> str:
    return f"{enrollment.id}:{step.id}"


class StepExecutor:
    def __init__(
        self,
        contacts: ContactStore,
        email: EmailTransport,
        webhooks: WebhookClient,
        retry: RetryCoordinator,
        webhook_secret: str | None = None,
        network_timeout: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.contacts = contacts
        self.email = email
        self.webhooks = webhooks
        self.retry = retry
        self.webhook_secret = webhook_secret
        self.network_timeout = network_timeout
        self._clock = clock
        self._handlers: Dict[StepType, Callable[..., StepResult]] = {
            StepType.SEND_EMAIL: self._send_email,
            StepType.WAIT: self._wait,
            StepType.CONDITION: self._condition,
            StepType.ADD_TAG: self._add_tag,
            StepType.REMOVE_TAG: self._remove_tag,
            StepType.UPDATE_FIELD: self._update_field,
            StepType.WEBHOOK: self._webhook,
        }

    def execute(self, enrollment: Enrollment, step: Step, heartbeat: Heartbeat | None = None) -> StepResult:
        """Run one step. `heartbeat` is called between retry attempts of network steps."""
        handler = self._handlers[StepType(step.type)]
        try:
            if step.type in RETRIED_STEP_TYPES:
                return handler(enrollment, step, heartbeat)
            return handler(enrollment, step)
        except PermanentError as exc:
            logger.warning("Step %s (%s) failed for enrollment %s: %s", step.id, step.type, enrollment.id, exc)
            entry = build_entry(
                enrollment, step, StepExecutionStatus.FAILED, self._clock(), input=self._input(step), error=str(exc)
            )
            return StepResult(Fail(str(exc)), entry)

    def _input(self, step: Step) -> Dict[str, Any]:
        return {"config": step.config.model_dump(mode="json")}

    def _completed(self, enrollment: Enrollment, step: Step, outcome, output: Dict[str, Any]) -> StepResult:
        entry = build_entry(
            enrollment, step, StepExecutionStatus.COMPLETED, self._clock(), input=self._input(step), output=output
        )
        return StepResult(outcome, entry)

    def _live_contact(self, contact_id: str) -> ContactSnapshot:
        contact = self.contacts.get_contact(contact_id)
        if contact.deleted:
            raise ContactNotFoundError(f"Contact {contact_id} was deleted")
        return contact

    def _send_email(
        self, enrollment: Enrollment, step: SendEmailStep, heartbeat: Heartbeat | None = None
    ) -> StepResult:
        config = step.config
        key = idempotency_key(enrollment, step)

        def send(attempt: int) -> Dict[str, Any]:
            contact = self._live_contact(enrollment.contact_id)
            if not contact.email:
                raise PermanentError(f"Contact {contact.id} has no email address")
            self.email.send(
                contact.email,
                config.template_id,
                idempotency_key=key,
                timeout=self.network_timeout,
                subject=config.subject,
                from_name=config.from_name,
                context={"contact": contact.as_document(), "enrollment_id": enrollment.id},
            )
            return {"to": contact.email, "template_id": config.template_id, "idempotency_key": key}

        return self.retry.run(enrollment, step, send, input=self._input(step), heartbeat=heartbeat)

    def _wait(self, enrollment: Enrollment, step: WaitStep) -> StepResult:
        until = step.config.resume_at(self._clock())
        entry = build_entry(
            enrollment,
            step,
            StepExecutionStatus.PENDING,
            self._clock(),
            input=self._input(step),
            output={"wait_until": until.isoformat(), "duration": step.config.describe()},
        )
        return StepResult(Wait(until), entry)

    def _condition(self, enrollment: Enrollment, step: ConditionStep) -> StepResult:
        config = step.config
        contact = self._live_contact(enrollment.contact_id)
        result = evaluate_condition(config, contact)
        target = config.on_true if result else config.on_false
        output = {"result": result, "next_step_id": target}
        if target is None:
            reason = f"Condition {step.id} evaluated {str(result).lower()} and has no branch for it"
            return self._completed(enrollment, step, Exit(reason), output)
        return self._completed(enrollment, step, Advance(target), output)

    def _add_tag(self, enrollment: Enrollment, step: AddTagStep) -> StepResult:
        tag_id = step.config.tag_id
        contact = self._live_contact(enrollment.contact_id)
        changed = tag_id not in contact.tags
        if changed:
            self.contacts.add_tag(contact.id, tag_id)
        return self._completed(enrollment, step, Advance(step.next_step_id), {"tag_id": tag_id, "changed": changed})

    def _remove_tag(self, enrollment: Enrollment, step: RemoveTagStep) -> StepResult:
        tag_id = step.config.tag_id
        contact = self._live_contact(enrollment.contact_id)
        changed = tag_id in contact.tags
        if changed:
            self.contacts.remove_tag(contact.id, tag_id)
        return self._completed(enrollment, step, Advance(step.next_step_id), {"tag_id": tag_id, "changed": changed})

    def _update_field(self, enrollment: Enrollment, step: UpdateFieldStep) -> StepResult:
        config = step.config
        contact = self._live_contact(enrollment.contact_id)
        value = resolve_field(contact, config.value_from) if config.value_from else config.value
        self.contacts.update_field(contact.id, config.field_name, value)
        return self._completed(
            enrollment, step, Advance(step.next_step_id), {"field": config.field_name, "value": value}
        )

    def _webhook(self, enrollment: Enrollment, step: WebhookStep, heartbeat: Heartbeat | None = None) -> StepResult:
        config = step.config
        if not self.webhook_secret:
            raise PermanentError("Webhook signing secret is not configured")

        def deliver(attempt: int) -> Dict[str, Any]:
            contact = self._live_contact(enrollment.contact_id)
            payload = build_payload(enrollment, step, contact, self._clock())
            body, headers = encode_request(payload, self.webhook_secret, config.headers)
            status_code = self.webhooks.post(config.url, body, headers, self.network_timeout, method=config.method)
            if not 200 <= status_code < 300:
                raise TransientError(f"Webhook returned HTTP {status_code}", status_code=status_code)
            return {"url": config.url, "status_code": status_code}

        return self.retry.run(enrollment, step, deliver, input=self._input(step), heartbeat=heartbeat)
