from .conditions import evaluate_condition, resolve_field
from .executor import StepExecutor, idempotency_key
from .interfaces import ContactNotFoundError, ContactStore, EmailTransport, TransportError, WebhookClient
from .log import ExecutionLog, build_entry
from .retry import RetryCoordinator, RetryPolicy, StepResult
from .scheduler import EnrollmentScheduler, TickResult, TickStatus
from .service import AutomationService
from .triggers import TriggerEvaluator, trigger_matches
from .webhooks import HttpxWebhookClient, build_payload, encode_request, sign_payload, verify_signature

__all__ = [
    "AutomationService",
    "ContactNotFoundError",
    "ContactStore",
    "EmailTransport",
    "EnrollmentScheduler",
    "ExecutionLog",
    "HttpxWebhookClient",
    "RetryCoordinator",
    "RetryPolicy",
    "StepExecutor",
    "StepResult",
    "TickResult",
    "TickStatus",
    "TransportError",
    "TriggerEvaluator",
    "WebhookClient",
    "build_entry",
    "build_payload",
    "encode_request",
    "evaluate_condition",
    "idempotency_key",
    "resolve_field",
    "sign_payload",
    "trigger_matches",
    "verify_signature",
]
