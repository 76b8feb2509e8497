import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List

from config import EngineSettings, configure_logging, get_settings
from db import AutomationRepository, InMemoryAutomationRepository, SqlAutomationRepository
from engine import (
    AutomationService,
    ContactStore,
    EmailTransport,
    EnrollmentScheduler,
    ExecutionLog,
    HttpxWebhookClient,
    RetryCoordinator,
    StepExecutor,
    TriggerEvaluator,
    WebhookClient,
)
from errors import StepConfigError
from models import Automation, StepType, new_id, utcnow
from validations import GraphCache

logger = logging.getLogger(__name__)


@dataclass
class AutomationEngine:
    repository: AutomationRepository
    service: AutomationService
    triggers: TriggerEvaluator
    scheduler: EnrollmentScheduler
    webhooks: WebhookClient

    def start(self) -> None:
        self.scheduler.start()

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        if isinstance(self.webhooks, HttpxWebhookClient):
            self.webhooks.close()


def build_repository(settings: EngineSettings) -> AutomationRepository:
    if settings.database_url:
        return SqlAutomationRepository.from_url(settings.database_url)
    logger.warning("AUTOMATIONS_DATABASE_URL is not set; using in-memory storage")
    return InMemoryAutomationRepository()


def build_engine(
    settings: EngineSettings,
    contacts: ContactStore,
    email: EmailTransport,
    webhooks: WebhookClient | None = None,
    repository: AutomationRepository | None = None,
    clock: Callable[[], datetime] = utcnow,
    sleep: Callable[[float], None] = time.sleep,
) -> AutomationEngine:
    """
    Wire the engine together:
    1. Repository from settings (or the one given).
    2. Executor with retries for network steps.
    3. Scheduler sharing one graph cache.
    4. Service and trigger evaluator handing new enrollments to the scheduler.
    """
    repository = repository or build_repository(settings)
    webhooks = webhooks or HttpxWebhookClient()
    retry = RetryCoordinator(ExecutionLog(repository), settings.retry_policy(), sleep=sleep, clock=clock)
    executor = StepExecutor(
        contacts,
        email,
        webhooks,
        retry,
        webhook_secret=settings.webhook_secret,
        network_timeout=settings.network_timeout_seconds,
        clock=clock,
    )
    scheduler = EnrollmentScheduler(
        repository,
        executor,
        graphs=GraphCache(),
        worker_count=settings.worker_count,
        batch_size=settings.batch_size,
        lease_ttl=settings.lease_ttl,
        poll_interval=settings.poll_interval_seconds,
        clock=clock,
    )
    service = AutomationService(repository, on_enrolled=scheduler.enqueue, clock=clock)
    triggers = TriggerEvaluator(repository, on_enrolled=scheduler.enqueue, clock=clock)
    return AutomationEngine(repository, service, triggers, scheduler, webhooks)


def _resolve_step_refs(steps: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Replace the definition's local step keys with fresh step ids."""
    ids = {}
    for index, raw in enumerate(steps):
        key = raw.get("key") or str(index)
        if key in ids:
            raise StepConfigError(f"Duplicate step key: {key}")
        ids[key] = new_id()

    def ref(key: str | None) -> str | None:
        if key is None:
            return None
        if key not in ids:
            raise StepConfigError(f"Unknown step key: {key}")
        return ids[key]

    resolved = []
    for index, raw in enumerate(steps):
        step = {k: v for k, v in raw.items() if k not in ("key", "next")}
        step["id"] = ids[raw.get("key") or str(index)]
        step["position"] = index
        step["next_step_id"] = ref(raw.get("next"))
        if raw.get("type") == StepType.CONDITION.value:
            config = dict(raw.get("config") or {})
            config["on_true"] = ref(config.get("on_true"))
            config["on_false"] = ref(config.get("on_false"))
            step["config"] = config
        resolved.append(step)
    return resolved


def orchestrate_definition(definition_text: str, service: AutomationService) -> Automation:
    """
    Import an automation definition:
    1. Parse the JSON document.
    2. Create the draft automation and its steps (first step is the start step).
    3. Activate it when the definition asks for it.

    Raises json.JSONDecodeError, TriggerConfigError, StepConfigError or
    GraphValidationError on invalid input.
    """
    definition: Dict[str, Any] = json.loads(definition_text)
    steps = _resolve_step_refs(definition.pop("steps", []))
    activate = definition.pop("activate", False)

    automation = service.create(definition)
    for step in steps:
        service.add_step(automation.id, step)
    if activate:
        return service.activate(automation.id)
    return service.get(automation.id)


if __name__ == "__main__":
    import sys

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)

    if len(sys.argv) < 2:
        print("Usage: python main.py DEFINITION.json [DEFINITION.json ...]")
        sys.exit(1)

    service = AutomationService(build_repository(settings))
    for path in sys.argv[1:]:
        with open(path, encoding="utf-8") as handle:
            automation = orchestrate_definition(handle.read(), service)
        print(f"{path}: automation {automation.id} saved as {automation.status.value}")
