from .automation import (
    Automation,
    AutomationStatus,
    ContactCreatedTrigger,
    ConsentGivenTrigger,
    EmptyTrigger,
    ScheduledDateTrigger,
    TagAddedTrigger,
    TicketPurchasedTrigger,
    TriggerType,
    new_id,
    parse_trigger_config,
    utcnow,
)
from .contact import ContactSnapshot
from .enrollment import TERMINAL_STATUSES, Enrollment, EnrollmentStatus
from .events import DomainEvent
from .log import LogEntry, StepExecutionStatus
from .outcomes import Advance, Exit, Fail, Outcome, Wait
from .steps import (
    NETWORK_STEP_TYPES,
    AddTagStep,
    ConditionConfig,
    ConditionOperator,
    ConditionStep,
    RemoveTagStep,
    SendEmailConfig,
    SendEmailStep,
    Step,
    StepType,
    TagConfig,
    UpdateFieldConfig,
    UpdateFieldStep,
    WaitConfig,
    WaitStep,
    WebhookConfig,
    WebhookStep,
    parse_step,
)

__all__ = [
    "Advance",
    "AddTagStep",
    "Automation",
    "AutomationStatus",
    "ConditionConfig",
    "ConditionOperator",
    "ConditionStep",
    "ConsentGivenTrigger",
    "ContactCreatedTrigger",
    "ContactSnapshot",
    "DomainEvent",
    "EmptyTrigger",
    "Enrollment",
    "EnrollmentStatus",
    "Exit",
    "Fail",
    "LogEntry",
    "NETWORK_STEP_TYPES",
    "Outcome",
    "RemoveTagStep",
    "ScheduledDateTrigger",
    "SendEmailConfig",
    "SendEmailStep",
    "Step",
    "StepExecutionStatus",
    "StepType",
    "TERMINAL_STATUSES",
    "TagAddedTrigger",
    "TagConfig",
    "TicketPurchasedTrigger",
    "TriggerType",
    "UpdateFieldConfig",
    "UpdateFieldStep",
    "Wait",
    "WaitConfig",
    "WaitStep",
    "WebhookConfig",
    "WebhookStep",
    "new_id",
    "parse_step",
    "parse_trigger_config",
    "utcnow",
]
