"""Shared fixtures: a controllable clock and in-memory stand-ins for the engine's collaborators."""

import json
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping

import pytest

from config import EngineSettings
from db import InMemoryAutomationRepository
from engine import ContactNotFoundError, TransportError
from main import build_engine, orchestrate_definition
from models import ContactSnapshot

WEBHOOK_SECRET = "test-signing-secret"
EVENT_ID = "event-2026"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self.now = self.now + timedelta(**kwargs)
            return self.now


class InMemoryContactStore:
    def __init__(self) -> None:
        self._contacts: Dict[str, ContactSnapshot] = {}
        self._lock = threading.Lock()

    def add(self, contact_id: str, email: str | None = None, **kwargs) -> ContactSnapshot:
        contact = ContactSnapshot(id=contact_id, email=email, **kwargs)
        with self._lock:
            self._contacts[contact_id] = contact
        return contact

    def get_contact(self, contact_id: str) -> ContactSnapshot:
        with self._lock:
            contact = self._contacts.get(contact_id)
        if contact is None:
            raise ContactNotFoundError(f"Contact {contact_id} not found")
        return contact

    def _replace(self, contact_id: str, **changes) -> None:
        with self._lock:
            contact = self._contacts[contact_id]
            self._contacts[contact_id] = contact.model_copy(update=changes)

    def add_tag(self, contact_id: str, tag_id: str) -> None:
        tags = self.get_contact(contact_id).tags
        if tag_id not in tags:
            self._replace(contact_id, tags=[*tags, tag_id])

    def remove_tag(self, contact_id: str, tag_id: str) -> None:
        tags = self.get_contact(contact_id).tags
        self._replace(contact_id, tags=[t for t in tags if t != tag_id])

    def update_field(self, contact_id: str, field_name: str, value: Any) -> None:
        fields = dict(self.get_contact(contact_id).fields)
        fields[field_name] = value
        self._replace(contact_id, fields=fields)

    def delete(self, contact_id: str) -> None:
        self._replace(contact_id, deleted=True)


@dataclass
class SentEmail:
    to: str
    template_id: str
    idempotency_key: str
    subject: str | None
    context: Dict[str, Any] | None
    timeout: float | None = None


class RecordingEmailTransport:
    """Records every send. Queued exceptions are raised by the next sends, in order."""

    def __init__(self) -> None:
        self.sent: List[SentEmail] = []
        self.failures: List[Exception] = []
        self._lock = threading.Lock()

    def send(
        self,
        to: str,
        template_id: str,
        idempotency_key: str,
        timeout: float,
        subject: str | None = None,
        from_name: str | None = None,
        context: Dict[str, Any] | None = None,
    ) -> None:
        with self._lock:
            if self.failures:
                raise self.failures.pop(0)
            self.sent.append(SentEmail(to, template_id, idempotency_key, subject, context, timeout))

    def fail_next(self, count: int = 1, message: str = "SMTP unavailable") -> None:
        self.failures.extend(TransportError(message) for _ in range(count))


@dataclass
class WebhookCall:
    url: str
    body: bytes
    headers: Dict[str, str]
    timeout: float
    method: str

    def json(self) -> Dict[str, Any]:
        return json.loads(self.body)


class ScriptedWebhookClient:
    """Answers each post with the next scripted status code (or raises it, if it is an exception)."""

    def __init__(self, responses: List[Any] | None = None) -> None:
        self.responses = list(responses or [])
        self.calls: List[WebhookCall] = []
        self._lock = threading.Lock()

    def post(
        self, url: str, body: bytes, headers: Mapping[str, str], timeout: float, method: str = "POST"
    ) -> int:
        with self._lock:
            self.calls.append(WebhookCall(url, body, dict(headers), timeout, method))
            response = self.responses.pop(0) if self.responses else 200
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def contacts():
    return InMemoryContactStore()


@pytest.fixture
def email():
    return RecordingEmailTransport()


@pytest.fixture
def webhooks():
    return ScriptedWebhookClient()


@pytest.fixture
def repository():
    return InMemoryAutomationRepository()


@pytest.fixture
def settings():
    return EngineSettings(_env_file=None, webhook_secret=WEBHOOK_SECRET, worker_count=2, database_url=None)


@pytest.fixture
def engine(settings, contacts, email, webhooks, repository, clock):
    built = build_engine(
        settings, contacts, email, webhooks, repository=repository, clock=clock, sleep=lambda seconds: None
    )
    yield built
    built.shutdown()


@pytest.fixture
def flow(engine):
    """Factory: import an automation definition and return (automation, {step name: step id})."""

    def create(steps: List[Dict[str, Any]], activate: bool = True, **fields):
        definition = {
            "event_id": EVENT_ID,
            "name": fields.pop("name", "Test automation"),
            "trigger_type": fields.pop("trigger_type", "contact_created"),
            **fields,
            "activate": activate,
            "steps": [{"name": step["key"], **step} for step in steps],
        }
        automation = orchestrate_definition(json.dumps(definition), engine.service)
        ids = {step.name: step.id for step in engine.service.list_steps(automation.id)}
        return automation, ids

    return create
